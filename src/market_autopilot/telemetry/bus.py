"""Event bus with a bounded recent-event ring and per-type Prometheus counters."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

import prometheus_client

if TYPE_CHECKING:
    from collections.abc import Callable

    from market_autopilot.models import TelemetryEvent

logger = logging.getLogger(__name__)

MAX_RECENT_EVENTS = 1_000
EVENT_COUNTER_NAME = "autopilot_event"


class TelemetryBus:
    """Fan-out of orchestrator events to listeners.

    Each bus owns its collector registry, so counters never leak between
    autopilot instances. Listener failures are logged and never reach the
    emitter.
    """

    def __init__(self, max_events: int = MAX_RECENT_EVENTS) -> None:
        self._listeners: list[Callable[[TelemetryEvent], None]] = []
        self._recent: deque[TelemetryEvent] = deque(maxlen=max_events)
        self._registry = prometheus_client.CollectorRegistry()
        self._events_total = prometheus_client.Counter(
            EVENT_COUNTER_NAME,
            "Total autopilot events emitted.",
            ["type"],
            registry=self._registry,
        )

    @property
    def registry(self) -> prometheus_client.CollectorRegistry:
        return self._registry

    def emit(self, event: TelemetryEvent) -> None:
        self._recent.append(event)
        self._events_total.labels(type=event.type).inc()
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Telemetry listener failed on %s event", event.type)

    def on(self, listener: Callable[[TelemetryEvent], None]) -> Callable[[], None]:
        """Register a listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def events(self) -> list[TelemetryEvent]:
        return list(self._recent)

    def counts(self) -> dict[str, int]:
        """Per-type event totals, read back from the Prometheus counter."""
        totals: dict[str, int] = {}
        for metric in self._events_total.collect():
            for sample in metric.samples:
                if sample.name == f"{EVENT_COUNTER_NAME}_total":
                    totals[sample.labels["type"]] = int(sample.value)
        return totals

    def to_prometheus(self) -> str:
        """Render the bus registry in the Prometheus text exposition format."""
        return prometheus_client.generate_latest(self._registry).decode("utf-8")
