"""Unit tests for the telemetry bus and metrics endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from prometheus_client import CONTENT_TYPE_LATEST

from market_autopilot.models import TelemetryEvent
from market_autopilot.telemetry.bus import TelemetryBus
from market_autopilot.telemetry.metrics_app import create_metrics_app

if TYPE_CHECKING:
    from market_autopilot.models import TelemetryEventType


def _event(event_type: TelemetryEventType = "bid_decision", **payload: object) -> TelemetryEvent:
    return TelemetryEvent(at="2026-03-01T12:00:00.000Z", type=event_type, payload=dict(payload))


@pytest.mark.unit
class TestTelemetryBus:
    """Tests for TelemetryBus."""

    def test_events_snapshot(self, bus: TelemetryBus) -> None:
        bus.emit(_event(n=1))
        snapshot = bus.events()
        bus.emit(_event(n=2))
        assert [event.payload["n"] for event in snapshot] == [1]
        assert len(bus.events()) == 2

    def test_ring_keeps_most_recent(self) -> None:
        bus = TelemetryBus(max_events=3)
        for n in range(5):
            bus.emit(_event(n=n))
        assert [event.payload["n"] for event in bus.events()] == [2, 3, 4]

    def test_default_ring_size(self, bus: TelemetryBus) -> None:
        for n in range(1_005):
            bus.emit(_event(n=n))
        events = bus.events()
        assert len(events) == 1_000
        assert events[0].payload["n"] == 5

    def test_counters_survive_ring_eviction(self) -> None:
        bus = TelemetryBus(max_events=1)
        bus.emit(_event("bid_decision"))
        bus.emit(_event("bid_decision"))
        bus.emit(_event("tick_error"))
        assert bus.counts() == {"bid_decision": 2, "tick_error": 1}

    def test_listener_receives_events(self, bus: TelemetryBus) -> None:
        received: list[TelemetryEvent] = []
        bus.on(received.append)
        bus.emit(_event(n=1))
        assert [event.payload["n"] for event in received] == [1]

    def test_unsubscribe(self, bus: TelemetryBus) -> None:
        received: list[TelemetryEvent] = []
        unsubscribe = bus.on(received.append)
        unsubscribe()
        unsubscribe()
        bus.emit(_event())
        assert received == []

    def test_failing_listener_is_isolated(self, bus: TelemetryBus) -> None:
        received: list[TelemetryEvent] = []

        def broken(event: TelemetryEvent) -> None:
            raise RuntimeError("listener bug")

        bus.on(broken)
        bus.on(received.append)
        bus.emit(_event())
        assert len(received) == 1
        assert bus.counts() == {"bid_decision": 1}

    def test_prometheus_text(self, bus: TelemetryBus) -> None:
        bus.emit(_event("tick_completed"))
        bus.emit(_event("bid_decision"))
        bus.emit(_event("bid_decision"))
        lines = bus.to_prometheus().splitlines()
        assert "# HELP autopilot_event_total Total autopilot events emitted." in lines
        assert "# TYPE autopilot_event_total counter" in lines
        assert 'autopilot_event_total{type="bid_decision"} 2.0' in lines
        assert 'autopilot_event_total{type="tick_completed"} 1.0' in lines

    def test_prometheus_text_without_events(self, bus: TelemetryBus) -> None:
        text = bus.to_prometheus()
        assert "# TYPE autopilot_event_total counter" in text
        assert "autopilot_event_total{" not in text

    def test_buses_do_not_share_counters(self) -> None:
        first = TelemetryBus()
        second = TelemetryBus()
        first.emit(_event("tick_error"))
        assert first.counts() == {"tick_error": 1}
        assert second.counts() == {}
        assert "tick_error" not in second.to_prometheus()


@pytest.mark.unit
class TestMetricsApp:
    """Tests for the FastAPI metrics endpoint."""

    async def test_metrics_endpoint(self, bus: TelemetryBus) -> None:
        bus.emit(_event("submit_success"))
        transport = ASGITransport(app=create_metrics_app(bus))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-type"] == CONTENT_TYPE_LATEST
        assert 'autopilot_event_total{type="submit_success"} 1.0' in response.text

    async def test_unknown_path_is_404(self, bus: TelemetryBus) -> None:
        transport = ASGITransport(app=create_metrics_app(bus))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/anything")
        assert response.status_code == 404
