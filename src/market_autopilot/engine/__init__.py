"""Pure decision logic: bidding, submission lifecycle and settlement."""

from market_autopilot.engine.bidding import decide_bid_for_job, rank_jobs_for_bidding
from market_autopilot.engine.lifecycle import (
    MarkerUpdate,
    StaleWithdrawal,
    SubmissionAttempt,
    WithdrawalPlan,
    apply_submission_failure,
    mark_submission_succeeded,
    next_submission_attempt,
    plan_stale_bid_withdrawals,
    to_execution_decision,
)
from market_autopilot.engine.settlement import build_settlement_report

__all__ = [
    "MarkerUpdate",
    "StaleWithdrawal",
    "SubmissionAttempt",
    "WithdrawalPlan",
    "apply_submission_failure",
    "build_settlement_report",
    "decide_bid_for_job",
    "mark_submission_succeeded",
    "next_submission_attempt",
    "plan_stale_bid_withdrawals",
    "rank_jobs_for_bidding",
    "to_execution_decision",
]
