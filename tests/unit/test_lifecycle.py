"""Unit tests for submission retry gating and stale-bid planning."""

from __future__ import annotations

from typing import Any

import pytest

from market_autopilot.config import PolicyConfig
from market_autopilot.engine.lifecycle import (
    apply_submission_failure,
    mark_submission_succeeded,
    next_submission_attempt,
    plan_stale_bid_withdrawals,
    to_execution_decision,
)
from market_autopilot.models import SubmitAttemptState, TrackedBid

POLICY = PolicyConfig()
NOW = "2026-03-01T12:00:00.000Z"


def _bid(bid_id: str = "bid-1", job_id: str = "job-1", status: str = "accepted") -> TrackedBid:
    return TrackedBid(bid_id=bid_id, job_id=job_id, status=status)


def _state(**overrides: Any) -> SubmitAttemptState:
    fields: dict[str, Any] = {"attempts": 1, "first_seen_at": "2026-03-01T11:50:00.000Z", "escalations": 0}
    fields.update(overrides)
    return SubmitAttemptState(**fields)


@pytest.mark.unit
class TestPlanStaleBidWithdrawals:
    """Tests for plan_stale_bid_withdrawals."""

    def test_missing_marker_is_initialised(self) -> None:
        plan = plan_stale_bid_withdrawals([_bid(status="pending")], NOW, {}, POLICY)
        assert plan.to_withdraw == []
        assert [(row.job_id, row.at_iso) for row in plan.marker_updates] == [("job-1", NOW)]

    def test_unparseable_marker_is_initialised(self) -> None:
        plan = plan_stale_bid_withdrawals([_bid(status="pending")], NOW, {"job-1": "yesterday"}, POLICY)
        assert len(plan.marker_updates) == 1
        assert plan.to_withdraw == []

    def test_old_marker_is_withdrawn(self) -> None:
        plan = plan_stale_bid_withdrawals(
            [_bid(status="pending")], NOW, {"job-1": "2026-03-01T11:29:00.000Z"}, POLICY
        )
        assert [(row.bid_id, row.job_id) for row in plan.to_withdraw] == [("bid-1", "job-1")]
        assert plan.marker_updates == []

    def test_marker_exactly_at_cutoff_is_withdrawn(self) -> None:
        plan = plan_stale_bid_withdrawals(
            [_bid(status="pending")], NOW, {"job-1": "2026-03-01T11:30:00.000Z"}, POLICY
        )
        assert len(plan.to_withdraw) == 1

    def test_recent_marker_is_kept(self) -> None:
        plan = plan_stale_bid_withdrawals(
            [_bid(status="pending")], NOW, {"job-1": "2026-03-01T11:31:00.000Z"}, POLICY
        )
        assert plan.to_withdraw == []
        assert plan.marker_updates == []

    def test_non_pending_bids_are_ignored(self) -> None:
        plan = plan_stale_bid_withdrawals([_bid(status="accepted")], NOW, {}, POLICY)
        assert plan.to_withdraw == []
        assert plan.marker_updates == []


@pytest.mark.unit
class TestNextSubmissionAttempt:
    """Tests for next_submission_attempt."""

    def test_first_attempt_creates_state(self) -> None:
        attempt = next_submission_attempt(_bid(), NOW, POLICY)
        assert attempt.should_attempt is True
        assert attempt.next_state.attempts == 1
        assert attempt.next_state.first_seen_at == NOW
        assert attempt.next_state.escalations == 0
        assert attempt.reason is None

    def test_already_submitted(self) -> None:
        attempt = next_submission_attempt(_bid(), NOW, POLICY, _state(attempts=9, submitted_at=NOW))
        assert attempt.should_attempt is False
        assert attempt.reason == "already_submitted"

    def test_retry_limit_reached(self) -> None:
        attempt = next_submission_attempt(_bid(), NOW, POLICY, _state(attempts=4))
        assert attempt.reason == "retry_limit_reached"
        assert attempt.next_state.attempts == 4

    def test_backoff_pending(self) -> None:
        state = _state(next_attempt_at="2026-03-01T12:10:00.000Z")
        attempt = next_submission_attempt(_bid(), NOW, POLICY, state)
        assert attempt.reason == "backoff_pending"
        assert attempt.next_state == state

    def test_backoff_elapsed_counts_attempt(self) -> None:
        attempt = next_submission_attempt(_bid(), NOW, POLICY, _state(next_attempt_at="2026-03-01T11:59:00.000Z"))
        assert attempt.should_attempt is True
        assert attempt.next_state.attempts == 2


@pytest.mark.unit
class TestApplySubmissionFailure:
    """Tests for apply_submission_failure."""

    @pytest.mark.parametrize(
        ("attempts", "expected_next"),
        [
            (0, "2026-03-01T12:10:00.000Z"),
            (1, "2026-03-01T12:10:00.000Z"),
            (3, "2026-03-01T12:30:00.000Z"),
            (100, "2026-03-01T15:00:00.000Z"),
        ],
    )
    def test_linear_backoff_with_ceiling(self, attempts: int, expected_next: str) -> None:
        failed = apply_submission_failure(_state(attempts=attempts), NOW, POLICY)
        assert failed.next_attempt_at == expected_next
        assert failed.attempts == attempts

    def test_escalates_after_threshold(self) -> None:
        failed = apply_submission_failure(_state(first_seen_at="2026-03-01T11:15:00.000Z"), NOW, POLICY)
        assert failed.escalations == 1

    def test_no_escalation_before_threshold(self) -> None:
        failed = apply_submission_failure(_state(first_seen_at="2026-03-01T11:16:00.000Z"), NOW, POLICY)
        assert failed.escalations == 0

    def test_escalations_are_capped(self) -> None:
        failed = apply_submission_failure(
            _state(first_seen_at="2026-03-01T08:00:00.000Z", escalations=4), NOW, POLICY
        )
        assert failed.escalations == 4


@pytest.mark.unit
class TestStateTransitions:
    def test_mark_submission_succeeded(self) -> None:
        succeeded = mark_submission_succeeded(_state(next_attempt_at="2026-03-01T12:10:00.000Z"), NOW)
        assert succeeded.submitted_at == NOW
        assert succeeded.next_attempt_at is None

    def test_state_is_stored_with_camel_case_keys(self) -> None:
        stored = _state(next_attempt_at="2026-03-01T12:10:00.000Z").to_store()
        assert stored == {
            "attempts": 1,
            "firstSeenAt": "2026-03-01T11:50:00.000Z",
            "nextAttemptAt": "2026-03-01T12:10:00.000Z",
            "escalations": 0,
        }

    def test_to_execution_decision(self) -> None:
        decision = to_execution_decision(_bid(), "asg-1", "skip", reason="backoff_pending", next_attempt_at=NOW)
        assert decision.job_id == "job-1"
        assert decision.bid_id == "bid-1"
        assert decision.assignment_id == "asg-1"
        assert decision.action == "skip"
        assert decision.reason == "backoff_pending"
        assert decision.next_attempt_at == NOW
