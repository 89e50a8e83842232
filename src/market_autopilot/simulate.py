"""Offline, deterministic dry run of one tick's decisions."""

from __future__ import annotations

import hashlib
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from market_autopilot.config import PolicyConfig, resolve_policy_config
from market_autopilot.engine.bidding import rank_jobs_for_bidding
from market_autopilot.engine.lifecycle import (
    next_submission_attempt,
    plan_stale_bid_withdrawals,
    to_execution_decision,
)
from market_autopilot.models import (
    BidDecision,
    ExecutionDecision,
    MarketBid,
    MarketJob,
    SubmitAttemptState,
    TrackedBid,
)
from market_autopilot.signing import canonical_json


class SimulationInput(BaseModel):
    """Market snapshot to simulate against. Accepts camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    now_iso: str = Field(min_length=1)
    jobs: list[MarketJob]
    bids_by_job_id: dict[str, list[MarketBid]] = Field(default_factory=dict)
    tracked_bids: list[TrackedBid] = Field(default_factory=list)
    submit_state_by_key: dict[str, SubmitAttemptState] | None = None
    policy: dict[str, Any] | PolicyConfig | None = None


class SimulationOutput(BaseModel):
    bid_decisions: list[BidDecision]
    withdraw_bid_ids: list[str]
    submit_decisions: list[ExecutionDecision]
    deterministic_digest: str


def _wire(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


def simulate_tick(snapshot: SimulationInput) -> SimulationOutput:
    """Compute the decisions a tick would make for ``snapshot``, without any I/O.

    Every tracked bid's job is treated as freshly marked at ``now_iso``. The
    digest covers the bid decisions, the sorted withdrawal ids and the submit
    decisions, so identical snapshots always produce identical digests.
    """
    policy = resolve_policy_config(snapshot.policy)

    jobs = sorted(snapshot.jobs, key=lambda job: job.job_id)
    bid_decisions = rank_jobs_for_bidding(jobs, snapshot.bids_by_job_id, policy)

    markers: dict[str, str | None] = {}
    for bid in snapshot.tracked_bids:
        markers.setdefault(bid.job_id, snapshot.now_iso)
    plan = plan_stale_bid_withdrawals(snapshot.tracked_bids, snapshot.now_iso, markers, policy)

    states = snapshot.submit_state_by_key or {}
    submit_decisions: list[ExecutionDecision] = []
    for bid in snapshot.tracked_bids:
        if not bid.is_executable:
            continue
        attempt = next_submission_attempt(bid, snapshot.now_iso, policy, states.get(f"{bid.job_id}:{bid.bid_id}"))
        submit_decisions.append(
            to_execution_decision(
                bid,
                "unknown",
                "submit" if attempt.should_attempt else "skip",
                reason=attempt.reason,
                next_attempt_at=attempt.next_state.next_attempt_at,
            )
        )
    submit_decisions.sort(key=lambda decision: f"{decision.job_id}:{decision.bid_id}")

    withdraw_bid_ids = [row.bid_id for row in plan.to_withdraw]
    digest_source = canonical_json(
        {
            "bidDecisions": [_wire(decision) for decision in bid_decisions],
            "withdrawBidIds": sorted(withdraw_bid_ids),
            "submitDecisions": [_wire(decision) for decision in submit_decisions],
        }
    )

    return SimulationOutput(
        bid_decisions=bid_decisions,
        withdraw_bid_ids=withdraw_bid_ids,
        submit_decisions=submit_decisions,
        deterministic_digest=hashlib.sha256(digest_source.encode("utf-8")).hexdigest(),
    )
