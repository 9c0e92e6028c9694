"""Error taxonomy for the headless client."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .batch import BatchResult


class HeadlessError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(HeadlessError):
    """Raised when a configuration payload cannot be loaded or validated."""


class SessionNotFoundError(HeadlessError):
    def __init__(self, session_id: str, *, detail: str | None = None) -> None:
        super().__init__(detail or f"Session not found or cache expired: {session_id}")
        self.session_id = session_id


class RequestTimeoutError(HeadlessError, TimeoutError):
    def __init__(self, timeout_s: float, *, session_id: str | None = None) -> None:
        super().__init__(f"Request timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s
        self.session_id = session_id


class UpstreamError(HeadlessError):
    """The remote service reported ``session.error``."""

    def __init__(self, session_id: str, error: Any = None) -> None:
        super().__init__(_describe_upstream(error))
        self.session_id = session_id
        self.error = error


class NoResponseError(HeadlessError):
    def __init__(self, session_id: str) -> None:
        super().__init__("No assistant response received")
        self.session_id = session_id


class TransportError(HeadlessError):
    """An API client call failed."""

    def __init__(
        self,
        operation: str,
        detail: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        status_text = f" ({status_code})" if status_code is not None else ""
        detail_text = f": {detail}" if detail else ""
        super().__init__(f"{operation} failed{status_text}{detail_text}")
        self.operation = operation
        self.detail = detail
        self.status_code = status_code


class CallbackError(HeadlessError):
    """A permission callback raised, timed out, or returned an unknown value."""

    def __init__(self, permission_id: str, reason: str) -> None:
        super().__init__(f"Permission callback failed for {permission_id}: {reason}")
        self.permission_id = permission_id
        self.reason = reason


class CancelledByCaller(HeadlessError):
    def __init__(self, session_id: str | None = None) -> None:
        super().__init__("Exchange aborted by caller")
        self.session_id = session_id


class BatchFailFastError(HeadlessError):
    """A fail-fast batch stopped after a failing wave."""

    def __init__(
        self,
        error: BaseException,
        *,
        partial_results: Sequence[BatchResult],
        completed_count: int,
    ) -> None:
        super().__init__(f"Batch aborted after {completed_count} request(s): {error}")
        self.error = error
        self.partial_results = list(partial_results)
        self.completed_count = completed_count


def _describe_upstream(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error or "Unknown error"
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        for key in ("message", "name"):
            if error.get(key):
                return str(error[key])
    return str(error)


__all__ = [
    "BatchFailFastError",
    "CallbackError",
    "CancelledByCaller",
    "ConfigError",
    "HeadlessError",
    "NoResponseError",
    "RequestTimeoutError",
    "SessionNotFoundError",
    "TransportError",
    "UpstreamError",
]
