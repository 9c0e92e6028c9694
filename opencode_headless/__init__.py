"""Public package surface for opencode-headless."""

from __future__ import annotations

from . import testkit
from .batch import BatchRequest, BatchResult, BatchScheduler
from .bus import EventBus, InMemoryEventBus, Subscription
from .client import HeadlessClient, build_message_payload
from .config import HeadlessConfig, PermissionConfig, RetryConfig, load_config
from .context import Diagnostic, FileInfo, ImageAttachment, PromptContext, Selection, format_parts
from .correlator import RequestResponseCorrelator
from .deferred import Deferrer, LoopDeferrer
from .errors import (
    BatchFailFastError,
    CallbackError,
    CancelledByCaller,
    ConfigError,
    HeadlessError,
    NoResponseError,
    RequestTimeoutError,
    SessionNotFoundError,
    TransportError,
    UpstreamError,
)
from .permissions import (
    Decision,
    Deferred,
    Immediate,
    PermissionArbiter,
    PermissionRule,
    PermissionStrategy,
    match_pattern,
)
from .retry import Backoff, RetryPolicy
from .stream import StreamCallbacks, StreamHandle, StreamSession
from .transport import ApiClient, EventStreamPump, HttpApiClient
from .types import (
    ChatResponse,
    MessageChunk,
    PermissionAction,
    PermissionRequest,
    SessionInfo,
    StreamState,
    ToolCallInfo,
)

__all__ = [
    "__version__",
    "ApiClient",
    "Backoff",
    "BatchFailFastError",
    "BatchRequest",
    "BatchResult",
    "BatchScheduler",
    "CallbackError",
    "CancelledByCaller",
    "ChatResponse",
    "ConfigError",
    "Decision",
    "Deferred",
    "Deferrer",
    "Diagnostic",
    "EventBus",
    "EventStreamPump",
    "FileInfo",
    "HeadlessClient",
    "HeadlessConfig",
    "HeadlessError",
    "HttpApiClient",
    "ImageAttachment",
    "Immediate",
    "InMemoryEventBus",
    "LoopDeferrer",
    "MessageChunk",
    "NoResponseError",
    "PermissionAction",
    "PermissionArbiter",
    "PermissionConfig",
    "PermissionRequest",
    "PermissionRule",
    "PermissionStrategy",
    "PromptContext",
    "RequestResponseCorrelator",
    "RequestTimeoutError",
    "RetryConfig",
    "RetryPolicy",
    "Selection",
    "SessionInfo",
    "SessionNotFoundError",
    "StreamCallbacks",
    "StreamHandle",
    "StreamSession",
    "StreamState",
    "Subscription",
    "ToolCallInfo",
    "TransportError",
    "UpstreamError",
    "build_message_payload",
    "format_parts",
    "load_config",
    "match_pattern",
    "testkit",
]

__version__ = "0.1.0"
