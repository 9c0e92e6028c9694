from __future__ import annotations

from pathlib import Path

import pytest

from opencode_headless.config import HeadlessConfig, RetryConfig, load_config
from opencode_headless.errors import ConfigError
from opencode_headless.permissions import PermissionStrategy
from opencode_headless.retry import Backoff
from opencode_headless.types import PermissionAction


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "headless.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults() -> None:
    config = HeadlessConfig()

    assert config.base_url == "http://127.0.0.1:4096"
    assert config.timeout_s == 120.0
    assert config.session_cache_ttl_s == 300.0
    assert config.max_concurrent == 5
    assert config.retry_policy() is None


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
base_url: http://localhost:9000
model: anthropic/claude-sonnet
retry:
  max_attempts: 5
  backoff: linear
permissions:
  strategy: auto_approve
  rules:
    - pattern: bash
      action: reject
""",
    )

    config = load_config(path)

    assert config.base_url == "http://localhost:9000"
    assert config.model == "anthropic/claude-sonnet"
    assert isinstance(config.retry, RetryConfig)
    assert config.retry.backoff is Backoff.LINEAR
    policy = config.retry_policy()
    assert policy is not None and policy.max_attempts == 5
    assert config.permissions is not None
    assert config.permissions.strategy is PermissionStrategy.AUTO_APPROVE
    assert config.permissions.rules[0].action is PermissionAction.REJECT


def test_environment_overlay_is_deep_merged(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
base_url: http://localhost:4096
retry:
  max_attempts: 2
  delay_s: 0.5
environments:
  ci:
    timeout_s: 30
    retry:
      max_attempts: 4
""",
    )

    base = load_config(path)
    ci = load_config(path, env="ci")

    assert base.timeout_s == 120.0
    assert ci.timeout_s == 30.0
    assert isinstance(ci.retry, RetryConfig)
    assert ci.retry.max_attempts == 4
    assert ci.retry.delay_s == 0.5
    assert ci.base_url == "http://localhost:4096"


def test_retry_true_uses_default_policy() -> None:
    policy = HeadlessConfig(retry=True).retry_policy()

    assert policy is not None
    assert policy.max_attempts == 3
    assert policy.initial_delay_s == 1.0


def test_custom_retryable_patterns_replace_defaults() -> None:
    policy = RetryConfig(retryable_errors=["overloaded"]).to_policy()

    assert policy.is_retryable(RuntimeError("Model overloaded"))
    assert not policy.is_retryable(TimeoutError("timed out"))


def test_empty_file_gives_defaults(tmp_path: Path) -> None:
    assert load_config(_write(tmp_path, "")) == HeadlessConfig()


@pytest.mark.parametrize(
    ("text", "env", "message"),
    [
        ("- just\n- a list\n", None, "must be a mapping"),
        ("base_url: x\n", "prod", "Unknown environment 'prod'"),
        ("max_concurrent: 0\n", None, "Invalid config"),
        ("environments:\n  ci: 3\n", "ci", "must be a mapping"),
        ("base_url: [unclosed\n", None, "Cannot read config"),
    ],
)
def test_invalid_configs_raise_config_error(tmp_path: Path, text: str, env: str | None, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path, text), env=env)


def test_missing_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
