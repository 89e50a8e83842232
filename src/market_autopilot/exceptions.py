"""Exception types raised by the autopilot and its market client."""

from __future__ import annotations

import json
from typing import Any


class AutopilotError(Exception):
    """Base class for autopilot errors."""


class ConfigError(AutopilotError):
    """Raised when a configuration file is missing or malformed."""


class MarketApiError(AutopilotError):
    """Raised when the market API answers with a non-success status.

    Attributes:
        status_code: HTTP status returned by the market.
        payload: Decoded JSON body (or None for an empty body).
    """

    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"Market API {status_code}: {json.dumps(payload, separators=(',', ':'), default=str)}")
