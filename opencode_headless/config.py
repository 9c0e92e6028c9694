"""Configuration models and YAML loading for the headless client."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped,unused-ignore]
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .permissions import PermissionStrategy
from .retry import Backoff, RetryPolicy, matches_retryable
from .transport import DEFAULT_BASE_URL
from .types import PermissionAction


class RetryConfig(BaseModel):
    """Retry settings; ``retryable_errors`` replaces the default patterns."""

    max_attempts: int = Field(default=3, ge=1)
    delay_s: float = Field(default=1.0, ge=0)
    backoff: Backoff = Backoff.EXPONENTIAL
    max_delay_s: float = Field(default=30.0, ge=0)
    jitter_ratio: float = Field(default=0.1, ge=0, le=1)
    retryable_errors: list[str] | None = None

    def to_policy(self) -> RetryPolicy:
        patterns = self.retryable_errors
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_s=self.delay_s,
            backoff=self.backoff,
            max_delay_s=self.max_delay_s,
            jitter_ratio=self.jitter_ratio,
            retryable=(lambda exc: matches_retryable(exc, patterns)) if patterns is not None else None,
        )


class PermissionRuleConfig(BaseModel):
    pattern: str
    action: PermissionAction


class PermissionConfig(BaseModel):
    strategy: PermissionStrategy | None = PermissionStrategy.AUTO_REJECT
    preset: Literal["safe_defaults"] | None = None
    rules: list[PermissionRuleConfig] = Field(default_factory=list)
    callback_timeout_s: float | None = 120.0


class HeadlessConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    directory: str | None = None
    model: str | None = Field(default=None, description="provider/model, e.g. 'anthropic/claude-sonnet'")
    agent: str | None = None
    timeout_s: float | None = Field(default=120.0, description="Single-shot exchange timeout")
    session_cache_ttl_s: float = Field(default=300.0, gt=0)
    max_concurrent: int = Field(default=5, ge=1)
    retry: RetryConfig | bool | None = None
    permissions: PermissionConfig | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    def retry_policy(self) -> RetryPolicy | None:
        if self.retry is True:
            return RetryConfig().to_policy()
        if isinstance(self.retry, RetryConfig):
            return self.retry.to_policy()
        return None


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path, *, env: str | None = None) -> HeadlessConfig:
    """Load a YAML config file, applying ``environments.<env>`` when given."""

    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config {source}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError("Config must be a mapping")

    payload = dict(data)
    environments = payload.pop("environments", None)
    if env is not None:
        if not isinstance(environments, Mapping) or env not in environments:
            raise ConfigError(f"Unknown environment '{env}'")
        overlay = environments[env]
        if not isinstance(overlay, Mapping):
            raise ConfigError(f"Environment '{env}' must be a mapping")
        payload = _deep_merge(payload, overlay)

    try:
        return HeadlessConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {source}: {exc}") from exc


__all__ = [
    "HeadlessConfig",
    "PermissionConfig",
    "PermissionRuleConfig",
    "RetryConfig",
    "load_config",
]
