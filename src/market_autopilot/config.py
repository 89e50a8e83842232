"""Configuration models and YAML loading for the autopilot."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from market_autopilot.exceptions import ConfigError

CONFIG_ENV_VAR = "AUTOPILOT_CONFIG_PATH"
DEFAULT_CONFIG_FILENAME = "config.yaml"


class PolicyConfig(BaseModel):
    """Bidding, retry and withdrawal policy knobs."""

    model_config = ConfigDict(extra="forbid")

    min_budget_near: float = Field(default=0.05, ge=0)
    max_budget_near: float = Field(default=20, gt=0)
    bid_discount_bps: int = Field(default=7000, ge=1, le=10_000)
    min_bid_near: float = Field(default=0.03, ge=0)
    max_bid_near: float = Field(default=10, gt=0)
    max_existing_bids: int = Field(default=12, ge=0)
    min_margin_near: float = Field(default=0.01, ge=0)
    stale_pending_bid_minutes: int = Field(default=30, gt=0)
    submit_retry_limit: int = Field(default=4, gt=0)
    submit_retry_backoff_minutes: int = Field(default=10, gt=0)
    submit_retry_max_backoff_minutes: int = Field(default=180, gt=0)
    submit_escalate_after_minutes: int = Field(default=45, gt=0)
    submit_escalation_limit: int = Field(default=4, gt=0)
    fail_closed: bool = True


DEFAULT_POLICY = PolicyConfig()


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=3, gt=0)
    backoff_seconds: float = Field(default=0.4, ge=0)


class MarketClientConfig(BaseModel):
    """Market API endpoint and credentials."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    auth_header: str = "authorization"
    timeout_seconds: float = Field(default=10.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class StateConfig(BaseModel):
    """Which state backend to use and where it lives."""

    model_config = ConfigDict(extra="forbid")

    driver: Literal["file", "sqlite"]
    path: str = Field(min_length=1)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    directory: str | None = None


class AutopilotConfig(BaseModel):
    """Root configuration for one autopilot instance."""

    model_config = ConfigDict(extra="forbid")

    agent_id: str = Field(min_length=1)
    market: MarketClientConfig
    state: StateConfig
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    near_price_usd: float | None = Field(default=None, gt=0)
    submit_signing_key: str | None = None
    submit_signer_id: str | None = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def resolve_policy_config(overrides: Mapping[str, Any] | PolicyConfig | None = None) -> PolicyConfig:
    """Merge partial policy overrides onto the defaults and validate the result."""
    if isinstance(overrides, PolicyConfig):
        return overrides
    merged = {**DEFAULT_POLICY.model_dump(), **dict(overrides or {})}
    return PolicyConfig(**merged)


def get_config_path(config_path: Path | str | None = None) -> Path:
    """Resolve the config file location.

    Order: explicit argument, then ``AUTOPILOT_CONFIG_PATH``, then
    ``config.yaml`` in the working directory.
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILENAME


def load_config(config_path: Path | str | None = None) -> AutopilotConfig:
    """Load an AutopilotConfig from a YAML (or JSON) file.

    Raises:
        ConfigError: If the file is missing or is not a mapping.
        pydantic.ValidationError: If the contents violate the schema.
    """
    path = get_config_path(config_path)
    if not path.exists():
        msg = f"Config file not found: {path}"
        raise ConfigError(msg)

    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {path}"
        raise ConfigError(msg)

    return AutopilotConfig(**raw)
