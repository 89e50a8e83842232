"""Typed accessors for the records the orchestrator keeps in the state store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from market_autopilot.models import SubmitAttemptState
from market_autopilot.state.keys import (
    KEY_SETTLEMENT_CURSOR,
    bid_marker_key,
    submit_state_key,
    withdrawn_bid_key,
)

if TYPE_CHECKING:
    from market_autopilot.state.base import StateStore


async def get_bid_marker(store: StateStore, job_id: str) -> str | None:
    value = await store.get(bid_marker_key(job_id))
    return value if isinstance(value, str) and value else None


async def set_bid_marker(store: StateStore, job_id: str, at_iso: str) -> None:
    await store.set(bid_marker_key(job_id), at_iso)


async def clear_bid_marker(store: StateStore, job_id: str) -> None:
    await store.delete(bid_marker_key(job_id))


async def get_submit_state(store: StateStore, job_id: str, bid_id: str) -> SubmitAttemptState | None:
    """Load retry bookkeeping for a (job, bid) pair, or None if never attempted."""
    raw = await store.get(submit_state_key(job_id, bid_id))
    if raw is None:
        return None
    return SubmitAttemptState.model_validate(raw)


async def set_submit_state(
    store: StateStore,
    job_id: str,
    bid_id: str,
    state: SubmitAttemptState,
) -> None:
    await store.set(submit_state_key(job_id, bid_id), state.to_store())


async def mark_bid_withdrawn(store: StateStore, bid_id: str, at_iso: str) -> None:
    await store.set(withdrawn_bid_key(bid_id), at_iso)


async def get_settlement_cursor(store: StateStore) -> str | None:
    value = await store.get(KEY_SETTLEMENT_CURSOR)
    return value if isinstance(value, str) else None


async def set_settlement_cursor(store: StateStore, updated_at_iso: str) -> None:
    await store.set(KEY_SETTLEMENT_CURSOR, updated_at_iso)
