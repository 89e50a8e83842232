"""Persisted key namespace. Changing these breaks existing state files."""

from __future__ import annotations

KEY_BID_MARKER_PREFIX = "near_market_bid_submitted:"
KEY_SUBMIT_STATE_PREFIX = "near_market_submit_state:"
KEY_SETTLEMENT_CURSOR = "near_market_settlement_cursor"
KEY_WITHDRAWN_PREFIX = "near_market_bid_withdrawn:"


def bid_marker_key(job_id: str) -> str:
    return f"{KEY_BID_MARKER_PREFIX}{job_id}"


def submit_state_key(job_id: str, bid_id: str) -> str:
    return f"{KEY_SUBMIT_STATE_PREFIX}{job_id}:{bid_id}"


def withdrawn_bid_key(bid_id: str) -> str:
    return f"{KEY_WITHDRAWN_PREFIX}{bid_id}"
