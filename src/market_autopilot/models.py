"""Pydantic models for market records, decisions, and tick results."""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JobType = Literal["standard", "competition"]

BidStatus = Literal[
    "pending",
    "accepted",
    "submitted",
    "in_progress",
    "withdrawn",
    "rejected",
    "completed",
    "unknown",
]

EXECUTABLE_BID_STATUSES: frozenset[str] = frozenset({"accepted", "in_progress", "submitted"})

TRACKED_BID_STATUSES: tuple[str, ...] = (
    "pending",
    "accepted",
    "submitted",
    "in_progress",
    "withdrawn",
    "rejected",
    "completed",
)

TelemetryEventType = Literal[
    "bid_decision",
    "bid_submitted",
    "bid_withdrawn",
    "submit_attempt",
    "submit_success",
    "submit_failure",
    "settlement_reconciled",
    "tick_error",
    "tick_completed",
]


class _CamelModel(BaseModel):
    """Model persisted or hashed with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def as_number(value: Any) -> float | None:
    """Read a JSON number or numeric string; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# Market records (as served by the market API)
# ---------------------------------------------------------------------------


class MarketAssignment(BaseModel):
    """One of this agent's assignments on a job."""

    model_config = ConfigDict(extra="allow")

    assignment_id: str
    status: str | None = None
    deliverable: str | None = None
    deliverable_hash: str | None = None
    submitted_at: str | None = None
    escrow_amount: str | float | None = None


class MarketJob(BaseModel):
    """An open or completed job listed on the market."""

    model_config = ConfigDict(extra="allow")

    job_id: str
    title: str = ""
    description: str | None = None
    status: str | None = None
    job_type: str | None = None
    budget_amount: str | float | None = None
    budget_token: str | None = None
    bid_count: int | None = None
    awarded_bid_id: str | None = None
    worker_agent_id: str | None = None
    updated_at: str | None = None
    created_at: str | None = None
    expires_at: str | None = None
    my_assignments: list[MarketAssignment] | None = None


class MarketBid(BaseModel):
    """A bid on a job, as returned by the job's bid listing."""

    model_config = ConfigDict(extra="allow")

    bid_id: str
    job_id: str | None = None
    status: str | None = None
    bidder_agent_id: str | None = None
    amount: str | float | None = None
    eta_seconds: int | None = None
    proposal: str | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Agent-side records
# ---------------------------------------------------------------------------


class TrackedBid(_CamelModel):
    """A bid this agent placed, with its status normalised."""

    bid_id: str
    job_id: str
    status: BidStatus
    amount_near: float | None = None

    @property
    def is_executable(self) -> bool:
        return self.status in EXECUTABLE_BID_STATUSES


class BidDecision(_CamelModel):
    """What the bidding policy wants done with one open job."""

    job_id: str
    action: Literal["skip", "bid", "entry"]
    reason: str | None = None
    bid_amount_near: float | None = None
    confidence: float = 0.0


class ExecutionDecision(_CamelModel):
    """What the orchestrator did for one executable bid during a tick."""

    job_id: str
    bid_id: str
    assignment_id: str
    action: Literal["skip", "submit"]
    reason: str | None = None
    next_attempt_at: str | None = None


class SubmitAttemptState(_CamelModel):
    """Retry bookkeeping for one (job, bid) pair.

    Persisted with camelCase keys; absent optionals are omitted.
    """

    attempts: int = 0
    first_seen_at: str
    next_attempt_at: str | None = None
    escalations: int = 0
    submitted_at: str | None = None

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ArtifactPayload(BaseModel):
    """Deliverable returned by an artifact provider."""

    deliverable_url: str
    artifact_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------


class DeliverableManifest(_CamelModel):
    """Description of a deliverable, created fresh for every submission attempt."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    assignment_id: str
    bid_id: str
    agent_id: str
    deliverable_url: str
    artifact_hash: str
    created_at: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ManifestSignature(_CamelModel):
    algorithm: Literal["hmac-sha256"] = "hmac-sha256"
    signer_id: str
    signature_hex: str


class SignedDeliverableManifest(_CamelModel):
    manifest: DeliverableManifest
    manifest_hash: str
    signature: ManifestSignature


# ---------------------------------------------------------------------------
# Settlement and tick results
# ---------------------------------------------------------------------------


class SettlementRecord(BaseModel):
    settlement_id: str
    job_id: str
    job_title: str
    bid_id: str | None = None
    amount_near: float
    amount_usd: float
    completed_at: str


class SettlementReport(BaseModel):
    """Aggregate of completed engagements; recomputed on every reconciliation."""

    records: list[SettlementRecord] = Field(default_factory=list)
    total_near: float = 0.0
    total_usd: float = 0.0
    scanned_jobs: int = 0


class TelemetryEvent(BaseModel):
    at: str
    type: TelemetryEventType
    payload: dict[str, Any] = Field(default_factory=dict)


class TickResult(BaseModel):
    """Audit record of one tick."""

    tick_id: str
    started_at: str
    completed_at: str
    bid_decisions: list[BidDecision]
    execution_decisions: list[ExecutionDecision]
    settlements: SettlementReport
    errors: list[str]
    halted: bool
