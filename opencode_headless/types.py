"""Value objects shared by the streaming, arbitration and batch layers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

Message = Mapping[str, Any]
Part = Mapping[str, Any]


class StreamState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED})


class PermissionAction(str, Enum):
    """Decision made for a tool-permission request."""

    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"

    @property
    def approval(self) -> str:
        """Vocabulary expected by the permission reply endpoint."""

        return _APPROVALS[self]


_APPROVALS = {
    PermissionAction.ONCE: "allow",
    PermissionAction.ALWAYS: "always",
    PermissionAction.REJECT: "deny",
}


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    id: str
    session_id: str
    message_id: str | None
    tool_name: str
    title: str
    type: str
    pattern: Any = None


@dataclass(slots=True)
class ToolCallInfo:
    id: str
    name: str
    status: str = "unknown"
    input: dict[str, Any] = field(default_factory=dict)
    output: Any | None = None
    error: Any | None = None


@dataclass(frozen=True, slots=True)
class MessageChunk:
    """Incremental text delivered to ``on_data``."""

    type: str
    text: str
    part: Part


@dataclass(frozen=True, slots=True)
class ChatResponse:
    text: str
    message: Message
    session_id: str


class SessionInfo(BaseModel):
    """Remote session record; unknown server fields are preserved."""

    id: str
    title: str | None = None

    model_config = ConfigDict(extra="allow")


def empty_message() -> dict[str, Any]:
    """Synthetic assistant message used when no real one was produced."""

    return {"info": {"role": "assistant"}, "parts": []}


def extract_text(message: Message) -> str:
    """Concatenate the text parts of a full message in their given order."""

    chunks: list[str] = []
    for part in message.get("parts") or []:
        if isinstance(part, Mapping) and part.get("type") == "text":
            text = part.get("text")
            if isinstance(text, str):
                chunks.append(text)
    return "".join(chunks)


__all__ = [
    "ChatResponse",
    "Message",
    "MessageChunk",
    "Part",
    "PermissionAction",
    "PermissionRequest",
    "SessionInfo",
    "StreamState",
    "ToolCallInfo",
    "empty_message",
    "extract_text",
]
