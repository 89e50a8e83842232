"""Settlement report over completed jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING

from market_autopilot.models import SettlementRecord, SettlementReport, as_number
from market_autopilot.timeutils import EPOCH_ISO, parse_iso, to_iso

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from market_autopilot.models import MarketBid, MarketJob


def _resolve_amount_near(
    job: MarketJob,
    job_bids: Sequence[MarketBid],
    agent_id: str,
) -> tuple[float | None, str | None]:
    if job.awarded_bid_id:
        awarded = next((bid for bid in job_bids if bid.bid_id == job.awarded_bid_id), None)
        amount = as_number(awarded.amount) if awarded else None
        if awarded is not None and amount is not None and amount > 0:
            return amount, awarded.bid_id

    own = next((bid for bid in job_bids if bid.bidder_agent_id == agent_id), None)
    amount = as_number(own.amount) if own else None
    if own is not None and amount is not None and amount > 0:
        return amount, own.bid_id

    budget = as_number(job.budget_amount)
    if str(job.budget_token or "NEAR").upper() == "NEAR" and budget is not None and budget > 0:
        return budget, None

    return None, None


def _completed_at(job: MarketJob) -> str:
    parsed = parse_iso(job.updated_at)
    return to_iso(parsed) if parsed is not None else EPOCH_ISO


def build_settlement_report(
    jobs: Sequence[MarketJob],
    bids_by_job_id: Mapping[str, Sequence[MarketBid]],
    agent_id: str,
    near_price_usd: float,
) -> SettlementReport:
    """Aggregate completed jobs into settlement records and totals.

    The paid amount is taken from the awarded bid, else this agent's own
    bid, else the NEAR budget; jobs with none of these are left out.
    """
    records: list[SettlementRecord] = []
    for job in jobs:
        if (job.status or "").lower() != "completed":
            continue
        amount_near, bid_id = _resolve_amount_near(job, bids_by_job_id.get(job.job_id, []), agent_id)
        if amount_near is None:
            continue
        records.append(
            SettlementRecord(
                settlement_id=f"{job.job_id}:{bid_id or 'unknown'}",
                job_id=job.job_id,
                job_title=job.title,
                bid_id=bid_id,
                amount_near=amount_near,
                amount_usd=amount_near * near_price_usd,
                completed_at=_completed_at(job),
            )
        )

    return SettlementReport(
        records=records,
        total_near=sum(record.amount_near for record in records),
        total_usd=sum(record.amount_usd for record in records),
        scanned_jobs=len(jobs),
    )
