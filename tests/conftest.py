"""Shared test fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from market_autopilot.config import AutopilotConfig
from market_autopilot.state.file_store import FileStateStore
from market_autopilot.telemetry.bus import TelemetryBus

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

AGENT_ID = "agent-self"
MARKET_URL = "http://market.test"


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., AutopilotConfig]:
    """Factory for an AutopilotConfig with a file state store under tmp_path."""

    def _make(**overrides: Any) -> AutopilotConfig:
        raw: dict[str, Any] = {
            "agent_id": AGENT_ID,
            "market": {
                "base_url": MARKET_URL,
                "api_key": "test-key",
                "retry": {"attempts": 1, "backoff_seconds": 0},
            },
            "state": {"driver": "file", "path": str(tmp_path / "state" / "autopilot.json")},
        }
        raw.update(overrides)
        return AutopilotConfig(**raw)

    return _make


@pytest.fixture()
async def file_store(tmp_path: Path) -> AsyncIterator[FileStateStore]:
    store = FileStateStore(tmp_path / "state" / "autopilot.json")
    yield store
    await store.close()


@pytest.fixture()
def bus() -> TelemetryBus:
    return TelemetryBus()
