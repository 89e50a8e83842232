"""Bid pricing and ranking for open jobs."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from market_autopilot.models import BidDecision, MarketBid, MarketJob, as_number

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from market_autopilot.config import PolicyConfig

BID_STEP_NEAR = 0.0001


def normalize_job_type(value: object) -> str:
    return "competition" if isinstance(value, str) and value.lower() == "competition" else "standard"


def budget_near(job: MarketJob) -> float | None:
    """The job's budget in NEAR, or None when it is priced in another token."""
    if str(job.budget_token or "NEAR").upper() != "NEAR":
        return None
    return as_number(job.budget_amount)


def _lowest_bid_near(bids: Sequence[MarketBid]) -> float | None:
    amounts = [amount for amount in (as_number(bid.amount) for bid in bids) if amount is not None and amount > 0]
    return min(amounts) if amounts else None


def _confidence(budget: float, existing_bids: int, policy: PolicyConfig) -> float:
    budget_score = min(1.0, budget / policy.max_budget_near)
    competition_penalty = min(0.4, existing_bids * 0.03)
    return max(0.0, min(1.0, round(budget_score * (1 - competition_penalty), 3)))


def _skip(job: MarketJob, reason: str) -> BidDecision:
    return BidDecision(job_id=job.job_id, action="skip", reason=reason, confidence=0.0)


def decide_bid_for_job(job: MarketJob, bids: Sequence[MarketBid], policy: PolicyConfig) -> BidDecision:
    """Decide whether and how much to bid on one job.

    Undercuts the lowest live bid by one step, otherwise bids the budget
    discounted by ``bid_discount_bps``; the amount is then clamped to the
    policy bounds and checked against the margin floor.

    Args:
        job: The open job.
        bids: Bids already placed on the job.
        policy: Bidding policy.

    Returns:
        A ``bid`` or ``entry`` decision with an amount, or a ``skip`` with a reason.
    """
    budget = budget_near(job)
    existing_bids = len(bids)

    if budget is None:
        return _skip(job, "budget_unknown_or_non_near")
    if budget < policy.min_budget_near or budget > policy.max_budget_near:
        return _skip(job, "budget_outside_policy")
    if existing_bids > policy.max_existing_bids:
        return _skip(job, "market_too_competitive")

    next_bid = budget * (policy.bid_discount_bps / 10_000)
    live_lowest = _lowest_bid_near(bids)
    if live_lowest is not None:
        next_bid = live_lowest - BID_STEP_NEAR

    upper_bound = min(policy.max_bid_near, max(0.0, budget - BID_STEP_NEAR))
    next_bid = max(policy.min_bid_near, min(upper_bound, next_bid))

    if next_bid <= 0 or not math.isfinite(next_bid):
        return _skip(job, "invalid_bid_after_bounds")
    if budget - next_bid < policy.min_margin_near:
        return _skip(job, "below_margin_floor")

    action = "entry" if normalize_job_type(job.job_type) == "competition" else "bid"
    return BidDecision(
        job_id=job.job_id,
        action=action,
        bid_amount_near=round(next_bid, 4),
        confidence=_confidence(budget, existing_bids, policy),
    )


def rank_jobs_for_bidding(
    jobs: Sequence[MarketJob],
    bids_by_job_id: Mapping[str, Sequence[MarketBid]],
    policy: PolicyConfig,
) -> list[BidDecision]:
    """Decide every job, actionable decisions first by descending confidence."""
    decisions = [decide_bid_for_job(job, bids_by_job_id.get(job.job_id, []), policy) for job in jobs]
    return sorted(decisions, key=lambda decision: (decision.action == "skip", -decision.confidence))
