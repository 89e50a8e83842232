"""Autonomous bidding, submission and settlement agent for the NEAR agent job market."""

from market_autopilot.autopilot import ArtifactProvider, Autopilot, create_autopilot, to_near_amount
from market_autopilot.client import MarketClient
from market_autopilot.config import AutopilotConfig, PolicyConfig, load_config, resolve_policy_config
from market_autopilot.exceptions import AutopilotError, ConfigError, MarketApiError
from market_autopilot.models import (
    ArtifactPayload,
    BidDecision,
    DeliverableManifest,
    ExecutionDecision,
    SettlementReport,
    SignedDeliverableManifest,
    TelemetryEvent,
    TickResult,
    TrackedBid,
)
from market_autopilot.signing import (
    canonicalize_manifest,
    deterministic_deliverable_hash,
    manifest_hash,
    sign_deliverable_manifest,
    verify_deliverable_manifest_signature,
)
from market_autopilot.simulate import SimulationInput, SimulationOutput, simulate_tick

__version__ = "0.1.0"

__all__ = [
    "ArtifactPayload",
    "ArtifactProvider",
    "Autopilot",
    "AutopilotConfig",
    "AutopilotError",
    "BidDecision",
    "ConfigError",
    "DeliverableManifest",
    "ExecutionDecision",
    "MarketApiError",
    "MarketClient",
    "PolicyConfig",
    "SettlementReport",
    "SignedDeliverableManifest",
    "SimulationInput",
    "SimulationOutput",
    "TelemetryEvent",
    "TickResult",
    "TrackedBid",
    "canonicalize_manifest",
    "create_autopilot",
    "deterministic_deliverable_hash",
    "load_config",
    "manifest_hash",
    "resolve_policy_config",
    "sign_deliverable_manifest",
    "simulate_tick",
    "to_near_amount",
    "verify_deliverable_manifest_signature",
]
