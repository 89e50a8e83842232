"""Submission retry gating and stale-bid withdrawal planning."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from market_autopilot.models import ExecutionDecision, SubmitAttemptState, TrackedBid
from market_autopilot.timeutils import parse_iso, plus_minutes

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from market_autopilot.config import PolicyConfig


@dataclass(frozen=True)
class StaleWithdrawal:
    bid_id: str
    job_id: str


@dataclass(frozen=True)
class MarkerUpdate:
    job_id: str
    at_iso: str


@dataclass(frozen=True)
class WithdrawalPlan:
    """Pending bids to withdraw, plus markers to (re)initialise first."""

    to_withdraw: list[StaleWithdrawal] = field(default_factory=list)
    marker_updates: list[MarkerUpdate] = field(default_factory=list)


@dataclass(frozen=True)
class SubmissionAttempt:
    """Outcome of the retry gate for one executable bid."""

    should_attempt: bool
    next_state: SubmitAttemptState
    reason: str | None = None


def plan_stale_bid_withdrawals(
    tracked_bids: Sequence[TrackedBid],
    now_iso: str,
    bid_marker_by_job_id: Mapping[str, str | None],
    policy: PolicyConfig,
) -> WithdrawalPlan:
    """Find pending bids whose marker is older than ``stale_pending_bid_minutes``.

    Pending bids without a usable marker get one set to ``now_iso`` instead,
    so they become eligible once the threshold has passed from now.
    """
    now = parse_iso(now_iso)
    if now is None:
        msg = f"Invalid ISO timestamp: {now_iso!r}"
        raise ValueError(msg)
    cutoff = now - timedelta(minutes=policy.stale_pending_bid_minutes)

    plan = WithdrawalPlan()
    for bid in tracked_bids:
        if bid.status != "pending":
            continue
        marker = parse_iso(bid_marker_by_job_id.get(bid.job_id))
        if marker is None:
            plan.marker_updates.append(MarkerUpdate(job_id=bid.job_id, at_iso=now_iso))
            continue
        if marker <= cutoff:
            plan.to_withdraw.append(StaleWithdrawal(bid_id=bid.bid_id, job_id=bid.job_id))
    return plan


def next_submission_attempt(
    bid: TrackedBid,
    now_iso: str,
    policy: PolicyConfig,
    state: SubmitAttemptState | None = None,
) -> SubmissionAttempt:
    """Decide whether a submission should be attempted now.

    Args:
        bid: The executable bid.
        now_iso: Current time.
        policy: Retry policy.
        state: Persisted retry state, or None if never attempted.

    Returns:
        A SubmissionAttempt. When attempting, ``next_state`` has the attempt
        counted; otherwise it is the base state unchanged, with a reason of
        ``already_submitted``, ``retry_limit_reached`` or ``backoff_pending``.
    """
    base = state or SubmitAttemptState(attempts=0, first_seen_at=now_iso, escalations=0)

    if base.submitted_at:
        return SubmissionAttempt(should_attempt=False, next_state=base, reason="already_submitted")
    if base.attempts >= policy.submit_retry_limit:
        return SubmissionAttempt(should_attempt=False, next_state=base, reason="retry_limit_reached")

    next_at = parse_iso(base.next_attempt_at)
    now = parse_iso(now_iso)
    if next_at is not None and now is not None and next_at > now:
        return SubmissionAttempt(should_attempt=False, next_state=base, reason="backoff_pending")

    return SubmissionAttempt(
        should_attempt=True,
        next_state=base.model_copy(update={"attempts": base.attempts + 1}),
    )


def apply_submission_failure(
    state: SubmitAttemptState,
    now_iso: str,
    policy: PolicyConfig,
) -> SubmitAttemptState:
    """Schedule the next attempt after a failed submission.

    Backoff grows linearly with attempts up to the configured ceiling; an
    escalation is counted once the bid has been failing for longer than
    ``submit_escalate_after_minutes``.
    """
    backoff_minutes = min(
        policy.submit_retry_max_backoff_minutes,
        policy.submit_retry_backoff_minutes * max(1, state.attempts),
    )

    escalations = state.escalations
    first_seen = parse_iso(state.first_seen_at)
    now = parse_iso(now_iso)
    if (
        first_seen is not None
        and now is not None
        and now - first_seen >= timedelta(minutes=policy.submit_escalate_after_minutes)
    ):
        escalations = min(policy.submit_escalation_limit, escalations + 1)

    return state.model_copy(
        update={
            "escalations": escalations,
            "next_attempt_at": plus_minutes(now_iso, backoff_minutes),
        }
    )


def mark_submission_succeeded(state: SubmitAttemptState, now_iso: str) -> SubmitAttemptState:
    return state.model_copy(update={"submitted_at": now_iso, "next_attempt_at": None})


def to_execution_decision(
    bid: TrackedBid,
    assignment_id: str,
    action: str,
    reason: str | None = None,
    next_attempt_at: str | None = None,
) -> ExecutionDecision:
    return ExecutionDecision(
        job_id=bid.job_id,
        bid_id=bid.bid_id,
        assignment_id=assignment_id,
        action=action,  # type: ignore[arg-type]
        reason=reason,
        next_attempt_at=next_attempt_at,
    )
