"""Retry policy with linear/exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger("opencode_headless.retry")

T = TypeVar("T")

DEFAULT_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "rate limit",
    "rate_limit",
    "rate-limit",
    "too many requests",
    "429",
    "502",
    "503",
    "504",
)


class Backoff(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def matches_retryable(error: BaseException, patterns: Sequence[str] = DEFAULT_RETRYABLE_PATTERNS) -> bool:
    """Case-insensitive substring match of ``"Type: message"`` against ``patterns``."""

    text = f"{type(error).__name__}: {error}".lower()
    return any(pattern.lower() in text for pattern in patterns)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_s: float = 1.0
    backoff: Backoff = Backoff.EXPONENTIAL
    max_delay_s: float = 30.0
    jitter_ratio: float = 0.1
    retryable: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[int, BaseException, float], Any] | None = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.backoff = Backoff(self.backoff)

    def is_retryable(self, error: BaseException) -> bool:
        if self.retryable is not None:
            return bool(self.retryable(error))
        return matches_retryable(error)

    def compute_delay(self, attempt: int) -> float:
        """Delay before the retry following failed ``attempt`` (1-based)."""

        if self.backoff is Backoff.EXPONENTIAL:
            base = self.initial_delay_s * (2 ** (attempt - 1))
        else:
            base = self.initial_delay_s * attempt
        jitter = base * self.jitter_ratio * (self.rng.random() * 2 - 1)
        return max(0.0, min(base + jitter, self.max_delay_s))

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay_s = self.compute_delay(attempt)
                logger.warning(
                    "retry_scheduled",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay_s": delay_s,
                        "error_type": exc.__class__.__name__,
                    },
                )
                if self.on_retry is not None:
                    try:
                        self.on_retry(attempt, exc, delay_s)
                    except Exception as observer_exc:  # noqa: BLE001
                        logger.warning(
                            "retry_observer_error",
                            extra={"attempt": attempt, "exception": observer_exc},
                        )
                await self.sleep(delay_s)
                attempt += 1

    def wrap(self, fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorate ``fn`` so each call runs under this policy."""

        @functools.wraps(fn)
        async def _wrapped(*args: Any, **kwargs: Any) -> T:
            return await self.run(lambda: fn(*args, **kwargs))

        return _wrapped


__all__ = ["Backoff", "DEFAULT_RETRYABLE_PATTERNS", "RetryPolicy", "matches_retryable"]
