"""Tick orchestrator: discovery, bidding, withdrawal, submission and settlement."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from market_autopilot.client import MarketClient
from market_autopilot.config import resolve_policy_config
from market_autopilot.engine.bidding import normalize_job_type, rank_jobs_for_bidding
from market_autopilot.engine.lifecycle import (
    apply_submission_failure,
    mark_submission_succeeded,
    next_submission_attempt,
    plan_stale_bid_withdrawals,
    to_execution_decision,
)
from market_autopilot.engine.settlement import build_settlement_report
from market_autopilot.models import (
    TRACKED_BID_STATUSES,
    ArtifactPayload,
    BidDecision,
    DeliverableManifest,
    ExecutionDecision,
    MarketAssignment,
    MarketBid,
    MarketJob,
    SettlementReport,
    TelemetryEvent,
    TickResult,
    TrackedBid,
)
from market_autopilot.signing import deterministic_deliverable_hash, manifest_hash
from market_autopilot.state.factory import create_state_store
from market_autopilot.state.markers import (
    clear_bid_marker,
    get_bid_marker,
    get_settlement_cursor,
    get_submit_state,
    mark_bid_withdrawn,
    set_bid_marker,
    set_settlement_cursor,
    set_submit_state,
)
from market_autopilot.telemetry.bus import TelemetryBus
from market_autopilot.timeutils import parse_iso, utc_now_iso

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from market_autopilot.config import AutopilotConfig
    from market_autopilot.models import TelemetryEventType
    from market_autopilot.state.base import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

FETCH_CONCURRENCY = 10
DEFAULT_NEAR_PRICE_USD = 4.0
BID_ETA_SECONDS = 3600
UNKNOWN_ASSIGNMENT = "unknown"


class ArtifactProvider(Protocol):
    """Produces the deliverable for an engagement, or None when it has nothing yet."""

    async def __call__(
        self,
        job: MarketJob,
        bid: TrackedBid,
        assignment: MarketAssignment,
    ) -> ArtifactPayload | None: ...


class _HaltTick(Exception):
    """Aborts the remaining phases of a fail-closed tick. The error is already recorded."""


@dataclass
class _TickContext:
    tick_id: str
    started_at: str
    bid_decisions: list[BidDecision] = field(default_factory=list)
    execution_decisions: list[ExecutionDecision] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    halted: bool = False


def to_near_amount(value: float) -> str:
    """Format a NEAR amount with at most four decimals and no trailing zeros."""
    text = f"{value:.4f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def pick_assignment(assignments: Sequence[MarketAssignment]) -> MarketAssignment | None:
    """Prefer an assignment that is in progress or submitted, else the first one."""
    for assignment in assignments:
        if (assignment.status or "").lower() in ("in_progress", "submitted"):
            return assignment
    return assignments[0] if assignments else None


async def map_limit(
    items: Sequence[T],
    limit: int,
    mapper: Callable[[T], Awaitable[R]],
) -> list[R]:
    """Map ``items`` through ``mapper`` with at most ``limit`` calls in flight.

    Workers pull the next index from a shared counter; results keep input order.
    """
    if not items:
        return []

    output: list[Any] = [None] * len(items)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while True:
            index = next_index
            next_index += 1
            if index >= len(items):
                return
            output[index] = await mapper(items[index])

    await asyncio.gather(*(worker() for _ in range(min(limit, len(items)))))
    return output


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class Autopilot:
    """Autonomous market agent.

    Each tick discovers open jobs, bids on the ones the policy accepts,
    withdraws stale pending bids, submits deliverables for awarded work and
    reconciles settlements. Ordinary failures never escape ``run_tick``; they
    are recorded in the TickResult and, under ``fail_closed``, halt the tick.

    Usage::

        autopilot = create_autopilot(load_config(), artifact_provider=provider)
        result = await autopilot.run_tick()
        await autopilot.close()
    """

    def __init__(
        self,
        config: AutopilotConfig,
        *,
        artifact_provider: ArtifactProvider | None = None,
        client: MarketClient | None = None,
        state: StateStore | None = None,
        telemetry: TelemetryBus | None = None,
    ) -> None:
        self._config = config
        self._policy = resolve_policy_config(config.policy)
        self._artifact_provider = artifact_provider
        self._client = client if client is not None else MarketClient(config.market)
        self._state = state if state is not None else create_state_store(config.state)
        self._telemetry = telemetry if telemetry is not None else TelemetryBus()
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def telemetry(self) -> TelemetryBus:
        return self._telemetry

    @property
    def client(self) -> MarketClient:
        return self._client

    @property
    def state(self) -> StateStore:
        return self._state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """Run one full tick.

        Returns:
            The audit record of the tick. Errors are listed in ``errors``
            and ``halted`` is set when a failure stopped the tick early.
        """
        ctx = _TickContext(tick_id=str(uuid.uuid4()), started_at=utc_now_iso())
        logger.info("[TICK] Starting tick %s", ctx.tick_id)

        try:
            await self._run_phases(ctx)
        except _HaltTick as halt:
            self._emit("tick_error", {"tick_id": ctx.tick_id, "error": str(halt)})
        except Exception as exc:
            message = _error_message(exc)
            logger.exception("[TICK] Tick %s failed", ctx.tick_id)
            ctx.errors.append(f"tick:{message}")
            self._emit("tick_error", {"tick_id": ctx.tick_id, "error": message})
            if self._policy.fail_closed:
                ctx.halted = True

        settlements = SettlementReport()
        try:
            settlements = await self.reconcile_settlements(near_price_usd=self._config.near_price_usd)
        except Exception as exc:
            message = _error_message(exc)
            logger.exception("[SETTLEMENT] Reconciliation failed in tick %s", ctx.tick_id)
            ctx.errors.append(f"settlement:{message}")
            self._emit("tick_error", {"tick_id": ctx.tick_id, "error": message, "stage": "settlement"})
            if self._policy.fail_closed:
                ctx.halted = True

        completed_at = utc_now_iso()
        result = TickResult(
            tick_id=ctx.tick_id,
            started_at=ctx.started_at,
            completed_at=completed_at,
            bid_decisions=ctx.bid_decisions,
            execution_decisions=ctx.execution_decisions,
            settlements=settlements,
            errors=ctx.errors,
            halted=ctx.halted,
        )
        self._emit(
            "tick_completed",
            {
                "tick_id": ctx.tick_id,
                "halted": ctx.halted,
                "errors": len(ctx.errors),
                "bids": len(ctx.bid_decisions),
                "executions": len(ctx.execution_decisions),
            },
            at=completed_at,
        )
        logger.info(
            "[TICK] Tick %s completed (halted=%s, errors=%d)",
            ctx.tick_id,
            ctx.halted,
            len(ctx.errors),
        )
        return result

    async def reconcile_settlements(
        self,
        limit: int = 100,
        near_price_usd: float | None = None,
    ) -> SettlementReport:
        """Rebuild the settlement report from this agent's completed jobs.

        Args:
            limit: Maximum number of completed jobs to scan.
            near_price_usd: NEAR/USD rate; falls back to the configured rate, then 4.

        Returns:
            The freshly computed report. The newest ``updated_at`` seen is
            persisted as the settlement cursor.
        """
        price = near_price_usd if near_price_usd is not None else self._config.near_price_usd
        if price is None:
            price = DEFAULT_NEAR_PRICE_USD
        agent_id = self._config.agent_id

        jobs = await self._client.list_completed_jobs_for_worker(agent_id, limit)
        bids_by_job_id = await self._fetch_bids(jobs)
        report = build_settlement_report(jobs, bids_by_job_id, agent_id, price)

        newest: tuple[Any, str] | None = None
        for job in jobs:
            parsed = parse_iso(job.updated_at)
            if parsed is not None and job.updated_at is not None and (newest is None or parsed > newest[0]):
                newest = (parsed, job.updated_at)
        if newest is not None:
            await set_settlement_cursor(self._state, newest[1])

        self._emit(
            "settlement_reconciled",
            {
                "records": len(report.records),
                "total_near": report.total_near,
                "total_usd": report.total_usd,
            },
        )
        logger.info(
            "[SETTLEMENT] %d records, %.4f NEAR from %d jobs",
            len(report.records),
            report.total_near,
            report.scanned_jobs,
        )
        return report

    async def get_settlement_cursor(self) -> str | None:
        return await get_settlement_cursor(self._state)

    async def run_loop(
        self,
        interval_seconds: float = 120,
        max_ticks: int | None = None,
        on_tick: Callable[[TickResult], Any] | None = None,
    ) -> None:
        """Run ticks until stopped.

        Stops after ``max_ticks`` ticks (0 or None runs forever), after a
        halted tick under ``fail_closed``, or when ``stop()`` is called.
        """
        # a stop() that arrived before the loop started still counts
        self._running = not self._stop_event.is_set()
        ticks = 0
        logger.info("Autopilot loop starting (agent_id=%s)", self._config.agent_id)

        while self._running:
            result = await self.run_tick()
            if on_tick is not None:
                outcome = on_tick(result)
                if inspect.isawaitable(outcome):
                    await outcome

            ticks += 1
            if max_ticks and ticks >= max_ticks:
                break
            if result.halted and self._policy.fail_closed:
                logger.warning("Tick %s halted under fail-closed policy, stopping loop", result.tick_id)
                break
            if not self._running:
                break

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                pass

        self._running = False
        self._stop_event.clear()
        logger.info("Autopilot loop stopped after %d ticks", ticks)

    def stop(self) -> None:
        """Signal the loop to stop after the current tick, or before the first one."""
        self._running = False
        self._stop_event.set()

    async def close(self) -> None:
        """Release the market client and the state store."""
        await self._client.close()
        await self._state.close()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_phases(self, ctx: _TickContext) -> None:
        jobs = await self._client.list_jobs(status="open", sort="budget_amount", order="desc", limit=100)
        bids_by_job_id = await self._fetch_bids(jobs)
        await self._bidding_phase(ctx, jobs, bids_by_job_id)

        tracked = await self._client.list_my_bids(limit=300, statuses=TRACKED_BID_STATUSES)
        markers: dict[str, str | None] = {}
        for bid in tracked:
            markers[bid.job_id] = await get_bid_marker(self._state, bid.job_id)

        await self._withdraw_phase(ctx, tracked, markers)
        await self._submission_phase(ctx, tracked)

    async def _bidding_phase(
        self,
        ctx: _TickContext,
        jobs: list[MarketJob],
        bids_by_job_id: dict[str, list[MarketBid]],
    ) -> None:
        jobs_by_id: dict[str, MarketJob] = {}
        for job in jobs:
            jobs_by_id.setdefault(job.job_id, job)

        ranked = rank_jobs_for_bidding(jobs, bids_by_job_id, self._policy)
        logger.info("[BIDDING] %d jobs ranked", len(ranked))

        for decision in ranked:
            ctx.bid_decisions.append(decision)
            self._emit("bid_decision", {"tick_id": ctx.tick_id, **decision.model_dump()})

            if decision.action == "skip" or decision.bid_amount_near is None:
                continue

            try:
                if await get_bid_marker(self._state, decision.job_id):
                    continue

                target_job = jobs_by_id.get(decision.job_id)
                if decision.action == "entry":
                    if not await self._submit_competition_entry(ctx, decision, target_job):
                        continue
                else:
                    if target_job is not None:
                        proposal = (
                            f"Autonomous execution for {target_job.title}. "
                            "Deterministic artifacts and deadline compliance."
                        )
                    else:
                        proposal = "Autonomous execution with deterministic artifacts."
                    await self._client.place_bid(
                        decision.job_id,
                        amount=to_near_amount(decision.bid_amount_near),
                        eta_seconds=BID_ETA_SECONDS,
                        proposal=proposal,
                    )

                await set_bid_marker(self._state, decision.job_id, ctx.started_at)
                self._emit(
                    "bid_submitted",
                    {
                        "tick_id": ctx.tick_id,
                        "job_id": decision.job_id,
                        "action": decision.action,
                        "amount_near": decision.bid_amount_near,
                    },
                )
                logger.info(
                    "[BIDDING] %s placed on job %s (%s NEAR)",
                    decision.action,
                    decision.job_id,
                    to_near_amount(decision.bid_amount_near),
                )
            except Exception as exc:
                logger.exception("[BIDDING] Failed to act on job %s", decision.job_id)
                ctx.errors.append(f"bid:{decision.job_id}:{_error_message(exc)}")
                self._halt_if_fail_closed(ctx, exc)

    async def _submit_competition_entry(
        self,
        ctx: _TickContext,
        decision: BidDecision,
        job: MarketJob | None,
    ) -> bool:
        """Submit an entry for a competition job. Returns False when nothing was submitted."""
        if job is None or self._artifact_provider is None:
            return False

        synthetic_id = f"entry:{decision.job_id}"
        artifact = await self._artifact_provider(
            job,
            TrackedBid(
                bid_id=synthetic_id,
                job_id=decision.job_id,
                status="in_progress",
                amount_near=decision.bid_amount_near,
            ),
            MarketAssignment(assignment_id=synthetic_id, status="in_progress"),
        )
        if artifact is None:
            return False

        manifest = self._build_manifest(ctx, decision.job_id, synthetic_id, synthetic_id, artifact)
        await self._client.submit_entry(
            decision.job_id,
            deliverable=artifact.deliverable_url,
            deliverable_hash=self._deliverable_hash(manifest, artifact),
        )
        self._emit_submit_attempt(ctx, manifest)
        self._emit(
            "submit_success",
            {
                "tick_id": ctx.tick_id,
                "bid_id": synthetic_id,
                "job_id": decision.job_id,
                "assignment_id": synthetic_id,
                "mode": "competition_entry",
            },
        )
        return True

    async def _withdraw_phase(
        self,
        ctx: _TickContext,
        tracked: list[TrackedBid],
        markers: dict[str, str | None],
    ) -> None:
        plan = plan_stale_bid_withdrawals(tracked, ctx.started_at, markers, self._policy)

        for update in plan.marker_updates:
            await set_bid_marker(self._state, update.job_id, update.at_iso)

        for row in plan.to_withdraw:
            try:
                await self._client.withdraw_bid(row.bid_id)
                await mark_bid_withdrawn(self._state, row.bid_id, ctx.started_at)
                await clear_bid_marker(self._state, row.job_id)
                self._emit("bid_withdrawn", {"tick_id": ctx.tick_id, "job_id": row.job_id, "bid_id": row.bid_id})
                logger.info("[WITHDRAW] Withdrew stale bid %s on job %s", row.bid_id, row.job_id)
            except Exception as exc:
                logger.exception("[WITHDRAW] Failed to withdraw bid %s", row.bid_id)
                ctx.errors.append(f"withdraw:{row.bid_id}:{_error_message(exc)}")
                self._halt_if_fail_closed(ctx, exc)

    async def _submission_phase(self, ctx: _TickContext, tracked: list[TrackedBid]) -> None:
        job_cache: dict[str, MarketJob] = {}
        for bid in tracked:
            if bid.is_executable:
                await self._submit_for_bid(ctx, bid, job_cache)

    async def _submit_for_bid(
        self,
        ctx: _TickContext,
        bid: TrackedBid,
        job_cache: dict[str, MarketJob],
    ) -> None:
        base_state = await get_submit_state(self._state, bid.job_id, bid.bid_id)
        attempt = next_submission_attempt(bid, ctx.started_at, self._policy, base_state)

        if not attempt.should_attempt:
            ctx.execution_decisions.append(
                to_execution_decision(
                    bid,
                    UNKNOWN_ASSIGNMENT,
                    "skip",
                    reason=attempt.reason,
                    next_attempt_at=attempt.next_state.next_attempt_at,
                )
            )
            if base_state is not None:
                await set_submit_state(self._state, bid.job_id, bid.bid_id, attempt.next_state)
            return

        assignment_id = UNKNOWN_ASSIGNMENT
        try:
            job = job_cache.get(bid.job_id)
            if job is None:
                job = await self._client.get_job(bid.job_id)
                job_cache[bid.job_id] = job

            assignment = pick_assignment(job.my_assignments or [])
            if assignment is None:
                ctx.execution_decisions.append(
                    to_execution_decision(bid, UNKNOWN_ASSIGNMENT, "skip", reason="missing_assignment")
                )
                return
            assignment_id = assignment.assignment_id

            if self._artifact_provider is None:
                ctx.execution_decisions.append(
                    to_execution_decision(bid, assignment_id, "skip", reason="artifact_provider_missing")
                )
                return

            artifact = await self._artifact_provider(job, bid, assignment)
            if artifact is None:
                ctx.execution_decisions.append(
                    to_execution_decision(bid, assignment_id, "skip", reason="artifact_provider_returned_null")
                )
                return

            manifest = self._build_manifest(ctx, bid.job_id, assignment_id, bid.bid_id, artifact)
            deliverable_hash = self._deliverable_hash(manifest, artifact)
        except Exception as exc:
            message = _error_message(exc)
            logger.exception("[SUBMIT] Could not prepare submission for bid %s", bid.bid_id)
            ctx.errors.append(f"submit:{bid.bid_id}:{message}")
            ctx.execution_decisions.append(to_execution_decision(bid, assignment_id, "skip", reason=message))
            self._emit(
                "submit_failure",
                {
                    "tick_id": ctx.tick_id,
                    "bid_id": bid.bid_id,
                    "job_id": bid.job_id,
                    "assignment_id": assignment_id,
                    "error": message,
                },
            )
            self._halt_if_fail_closed(ctx, exc)
            return

        try:
            if normalize_job_type(job.job_type) == "competition":
                await self._client.submit_entry(
                    bid.job_id,
                    deliverable=artifact.deliverable_url,
                    deliverable_hash=deliverable_hash,
                )
            else:
                await self._client.submit_work(
                    bid.job_id,
                    deliverable=artifact.deliverable_url,
                    deliverable_hash=deliverable_hash,
                )

            self._emit_submit_attempt(ctx, manifest)
            await set_submit_state(
                self._state,
                bid.job_id,
                bid.bid_id,
                mark_submission_succeeded(attempt.next_state, ctx.started_at),
            )
            ctx.execution_decisions.append(to_execution_decision(bid, assignment_id, "submit"))
            self._emit(
                "submit_success",
                {
                    "tick_id": ctx.tick_id,
                    "bid_id": bid.bid_id,
                    "job_id": bid.job_id,
                    "assignment_id": assignment_id,
                },
            )
            logger.info("[SUBMIT] Submitted deliverable for bid %s on job %s", bid.bid_id, bid.job_id)
        except Exception as exc:
            failed_state = apply_submission_failure(attempt.next_state, ctx.started_at, self._policy)
            await set_submit_state(self._state, bid.job_id, bid.bid_id, failed_state)
            message = _error_message(exc)
            logger.exception(
                "[SUBMIT] Submission failed for bid %s, next attempt at %s",
                bid.bid_id,
                failed_state.next_attempt_at,
            )
            ctx.errors.append(f"submit:{bid.bid_id}:{message}")
            ctx.execution_decisions.append(
                to_execution_decision(
                    bid,
                    assignment_id,
                    "skip",
                    reason=message,
                    next_attempt_at=failed_state.next_attempt_at,
                )
            )
            self._emit(
                "submit_failure",
                {
                    "tick_id": ctx.tick_id,
                    "bid_id": bid.bid_id,
                    "job_id": bid.job_id,
                    "assignment_id": assignment_id,
                    "error": message,
                    "next_attempt_at": failed_state.next_attempt_at,
                },
            )
            self._halt_if_fail_closed(ctx, exc)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _fetch_bids(self, jobs: Sequence[MarketJob]) -> dict[str, list[MarketBid]]:
        async def fetch(job: MarketJob) -> tuple[str, list[MarketBid]]:
            return job.job_id, await self._client.list_job_bids(job.job_id, limit=100)

        pairs = await map_limit(jobs, FETCH_CONCURRENCY, fetch)
        return dict(pairs)

    def _build_manifest(
        self,
        ctx: _TickContext,
        job_id: str,
        assignment_id: str,
        bid_id: str,
        artifact: ArtifactPayload,
    ) -> DeliverableManifest:
        return DeliverableManifest(
            job_id=job_id,
            assignment_id=assignment_id,
            bid_id=bid_id,
            agent_id=self._config.agent_id,
            deliverable_url=artifact.deliverable_url,
            artifact_hash=artifact.artifact_hash,
            created_at=ctx.started_at,
            metadata=artifact.metadata,
        )

    def _deliverable_hash(self, manifest: DeliverableManifest, artifact: ArtifactPayload) -> str:
        signing_key = self._config.submit_signing_key
        if not signing_key:
            return artifact.artifact_hash
        return deterministic_deliverable_hash(manifest, signing_key, self._config.submit_signer_id)

    def _emit_submit_attempt(self, ctx: _TickContext, manifest: DeliverableManifest) -> None:
        if not self._config.submit_signing_key:
            return
        self._emit(
            "submit_attempt",
            {
                "tick_id": ctx.tick_id,
                "bid_id": manifest.bid_id,
                "job_id": manifest.job_id,
                "assignment_id": manifest.assignment_id,
                "manifest_hash": manifest_hash(manifest),
            },
        )

    def _halt_if_fail_closed(self, ctx: _TickContext, exc: Exception) -> None:
        if self._policy.fail_closed:
            ctx.halted = True
            raise _HaltTick(_error_message(exc)) from exc

    def _emit(self, event_type: TelemetryEventType, payload: dict[str, Any], at: str | None = None) -> None:
        self._telemetry.emit(TelemetryEvent(at=at or utc_now_iso(), type=event_type, payload=payload))


def create_autopilot(
    config: AutopilotConfig,
    artifact_provider: ArtifactProvider | None = None,
) -> Autopilot:
    """Build an Autopilot with its market client, state store and telemetry bus."""
    return Autopilot(config, artifact_provider=artifact_provider)
