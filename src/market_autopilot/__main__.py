"""Command-line entry point for the market autopilot.

Usage::

    market-autopilot run --config config.yaml --metrics-port 9464
    market-autopilot tick --config config.yaml
    python -m market_autopilot simulate --input snapshot.json
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import uvicorn
import yaml
from pydantic import ValidationError

from market_autopilot.autopilot import create_autopilot
from market_autopilot.client import MarketClient
from market_autopilot.config import load_config
from market_autopilot.exceptions import AutopilotError
from market_autopilot.logging import setup_logging
from market_autopilot.simulate import SimulationInput, simulate_tick
from market_autopilot.telemetry.metrics_app import create_metrics_app

if TYPE_CHECKING:
    from collections.abc import Iterator

    from market_autopilot.config import AutopilotConfig
    from market_autopilot.models import TickResult

logger = logging.getLogger("market_autopilot")


class _MetricsServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the autopilot loop."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _load(config_path: str | None) -> AutopilotConfig:
    config = load_config(config_path)
    setup_logging(config.logging.level, log_directory=config.logging.directory)
    return config


def _write_json(payload: Any, pretty: bool = True) -> None:
    text = json.dumps(payload, indent=2 if pretty else None, ensure_ascii=False, default=str)
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


async def _run(args: argparse.Namespace) -> int:
    config = _load(args.config)
    autopilot = create_autopilot(config)

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        autopilot.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        asyncio.get_running_loop().add_signal_handler(sig, _handle_signal)

    server: _MetricsServer | None = None
    server_task: asyncio.Task[None] | None = None
    if args.metrics_port is not None:
        server = _MetricsServer(
            uvicorn.Config(
                create_metrics_app(autopilot.telemetry),
                host=args.metrics_host,
                port=args.metrics_port,
                log_level="warning",
            )
        )
        server_task = asyncio.create_task(server.serve())
        logger.info("Serving metrics on %s:%d/metrics", args.metrics_host, args.metrics_port)

    def _on_tick(result: TickResult) -> None:
        _write_json(result.model_dump(mode="json"), pretty=False)

    try:
        await autopilot.run_loop(
            interval_seconds=args.interval_seconds,
            max_ticks=args.max_ticks,
            on_tick=_on_tick,
        )
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        await autopilot.close()
        logger.info("Autopilot shut down cleanly")
    return 0


async def _tick(args: argparse.Namespace) -> int:
    autopilot = create_autopilot(_load(args.config))
    try:
        result = await autopilot.run_tick()
    finally:
        await autopilot.close()
    _write_json(result.model_dump(mode="json"))
    return 0


async def _reconcile(args: argparse.Namespace) -> int:
    autopilot = create_autopilot(_load(args.config))
    try:
        report = await autopilot.reconcile_settlements(limit=args.limit)
    finally:
        await autopilot.close()
    _write_json(report.model_dump(mode="json"))
    return 0


async def _doctor(args: argparse.Namespace) -> int:
    config = _load(args.config)
    client = MarketClient(config.market)
    try:
        jobs = await client.list_jobs(limit=1)
    finally:
        await client.close()
    _write_json(
        {
            "ok": True,
            "agent_id": config.agent_id,
            "base_url": config.market.base_url,
            "state_driver": config.state.driver,
            "jobs_sampled": len(jobs),
        }
    )
    return 0


def _simulate(args: argparse.Namespace) -> int:
    snapshot = SimulationInput.model_validate(json.loads(Path(args.input).read_text(encoding="utf-8")))
    if args.policy:
        policy = yaml.safe_load(Path(args.policy).read_text(encoding="utf-8"))
        snapshot = snapshot.model_copy(update={"policy": policy})
    output = simulate_tick(snapshot)
    _write_json(output.model_dump(mode="json"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="market-autopilot",
        description="Autonomous bidding, submission and settlement agent for the NEAR agent market.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    def add_config(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--config",
            type=str,
            metavar="FILE",
            help="Config file (default: $AUTOPILOT_CONFIG_PATH, then ./config.yaml).",
        )

    run = commands.add_parser("run", help="Run the autopilot loop, printing one JSON line per tick.")
    add_config(run)
    run.add_argument("--interval-seconds", type=float, default=120.0, metavar="N", help="Seconds between ticks.")
    run.add_argument("--max-ticks", type=int, metavar="N", help="Stop after N ticks (default: run forever).")
    run.add_argument("--metrics-port", type=int, metavar="PORT", help="Serve Prometheus metrics on PORT.")
    run.add_argument("--metrics-host", type=str, default="127.0.0.1", metavar="HOST")

    tick = commands.add_parser("tick", help="Run a single tick.")
    add_config(tick)

    reconcile = commands.add_parser("reconcile", help="Reconcile completed settlements.")
    add_config(reconcile)
    reconcile.add_argument("--limit", type=int, default=100, metavar="N", help="Completed jobs to scan.")

    simulate = commands.add_parser("simulate", help="Simulate one tick from a snapshot file, without network access.")
    simulate.add_argument("--input", type=str, required=True, metavar="FILE", help="Snapshot JSON file.")
    simulate.add_argument("--policy", type=str, metavar="FILE", help="Policy overrides (YAML or JSON).")

    doctor = commands.add_parser("doctor", help="Validate configuration and market connectivity.")
    add_config(doctor)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Sync entry point."""
    args = build_parser().parse_args(argv)

    try:
        if args.command == "simulate":
            return _simulate(args)
        handlers = {"run": _run, "tick": _tick, "reconcile": _reconcile, "doctor": _doctor}
        return asyncio.run(handlers[args.command](args))
    except (AutopilotError, ValidationError, yaml.YAMLError, httpx.HTTPError, OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
