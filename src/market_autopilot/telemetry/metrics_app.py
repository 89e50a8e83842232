"""FastAPI application exposing telemetry counters to Prometheus."""

from __future__ import annotations

from typing import TYPE_CHECKING

import prometheus_client
from fastapi import FastAPI, Response

if TYPE_CHECKING:
    from market_autopilot.telemetry.bus import TelemetryBus


def create_metrics_app(bus: TelemetryBus) -> FastAPI:
    """
    Create the metrics application for a telemetry bus.

    Returns:
        FastAPI instance serving ``GET /metrics``.
    """
    app = FastAPI(title="Market Autopilot Metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(
            prometheus_client.generate_latest(bus.registry),
            media_type=prometheus_client.CONTENT_TYPE_LATEST,
        )

    return app
