"""UTC timestamp helpers shared by the engine and the orchestrator."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

EPOCH_ISO = "1970-01-01T00:00:00.000Z"


def to_iso(moment: datetime) -> str:
    """Render a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return to_iso(datetime.now(UTC))


def parse_iso(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None when it is not one.

    Naive timestamps are read as UTC.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def plus_minutes(iso: str, minutes: float) -> str:
    """Shift an ISO timestamp forward by ``minutes``."""
    base = parse_iso(iso)
    if base is None:
        msg = f"Invalid ISO timestamp: {iso!r}"
        raise ValueError(msg)
    return to_iso(base + timedelta(minutes=minutes))
