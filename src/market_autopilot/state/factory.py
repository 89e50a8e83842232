"""Backend selection for the state store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from market_autopilot.state.file_store import FileStateStore
from market_autopilot.state.sqlite_store import SqliteStateStore

if TYPE_CHECKING:
    from market_autopilot.config import StateConfig
    from market_autopilot.state.base import StateStore


def create_state_store(config: StateConfig) -> StateStore:
    """Build the backend named by ``config.driver``."""
    if config.driver == "sqlite":
        return SqliteStateStore(config.path)
    return FileStateStore(config.path)
