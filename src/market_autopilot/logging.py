"""
Structured JSON logging for the autopilot process.

Each record becomes one JSON line on stderr, so stdout stays free for tick
results. Orchestrator messages carry a bracketed phase tag such as
``[BIDDING]``; the formatter lifts it into a ``phase`` field.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any

from market_autopilot.timeutils import to_iso

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
LOG_FILENAME = "autopilot.log"
LOG_RETENTION_DAYS = 14

_PHASE_TAG = re.compile(r"^\[([A-Z]+)\]\s*")
_RECORD_ATTRS: frozenset[str] = frozenset(
    {*logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__, "message", "asctime", "taskName"}
)


class JSONFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON line.

    Fields passed through ``extra=`` end up under ``context``.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        log_data: dict[str, Any] = {
            "at": to_iso(datetime.fromtimestamp(record.created, tz=UTC)),
            "level": record.levelname,
            "logger": record.name,
        }

        match = _PHASE_TAG.match(message)
        if match:
            log_data["phase"] = match.group(1).lower()
            message = message[match.end() :]
        log_data["message"] = message

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        context = {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}
        if context:
            log_data["context"] = context

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str,
    name: str = "market_autopilot",
    log_directory: str | None = None,
) -> logging.Logger:
    """
    Configure JSON logging for the autopilot's logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL), any case.
        name: Logger to configure; child module loggers inherit it.
        log_directory: When set, also write ``autopilot.log`` there, rotated at
            UTC midnight and kept for two weeks.

    Returns:
        The configured logger.

    Raises:
        ValueError: If level is not a valid log level.
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_directory:
        os.makedirs(log_directory, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                os.path.join(log_directory, LOG_FILENAME),
                when="midnight",
                utc=True,
                backupCount=LOG_RETENTION_DAYS,
                encoding="utf-8",
            )
        )

    logger = logging.getLogger(name)
    logger.setLevel(level_upper)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False
    return logger
