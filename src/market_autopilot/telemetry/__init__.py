"""In-process telemetry: event bus, counters and the Prometheus endpoint."""

from market_autopilot.telemetry.bus import TelemetryBus
from market_autopilot.telemetry.metrics_app import create_metrics_app

__all__ = ["TelemetryBus", "create_metrics_app"]
