"""Key-value persistence for bid markers, retry state and settlement cursors."""

from market_autopilot.state.base import StateStore
from market_autopilot.state.factory import create_state_store
from market_autopilot.state.file_store import FileStateStore
from market_autopilot.state.sqlite_store import SqliteStateStore

__all__ = ["FileStateStore", "SqliteStateStore", "StateStore", "create_state_store"]
