"""Test helpers: a scriptable in-memory API client and event payload builders."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .bus import (
    MESSAGE_PART_UPDATED,
    MESSAGE_UPDATED,
    PERMISSION_REPLIED,
    PERMISSION_UPDATED,
    SESSION_ERROR,
    SESSION_IDLE,
    InMemoryEventBus,
)
from .types import Message, SessionInfo


@dataclass(slots=True)
class RecordedCall:
    method: str
    args: tuple[Any, ...]


@dataclass(slots=True)
class FakeApiClient:
    """In-memory :class:`~opencode_headless.transport.ApiClient`.

    ``failures`` maps a method name to an exception (raised every call) or a
    list of exceptions (raised once each, in order). ``on_create_message`` is
    invoked with ``(session_id, payload)`` so tests can script server events.
    """

    messages: dict[tuple[str, str], Message] = field(default_factory=dict)
    sessions: dict[str, SessionInfo] = field(default_factory=dict)
    failures: dict[str, BaseException | list[BaseException]] = field(default_factory=dict)
    on_create_message: Callable[[str, Mapping[str, Any]], Any] | None = None
    calls: list[RecordedCall] = field(default_factory=list)
    _ids: Any = field(default_factory=lambda: itertools.count(1))

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append(RecordedCall(method, args))
        failure = self.failures.get(method)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

    def calls_to(self, method: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.method == method]

    def add_message(self, session_id: str, message_id: str, *texts: str) -> Message:
        message = {
            "info": {"id": message_id, "sessionID": session_id, "role": "assistant"},
            "parts": [{"type": "text", "text": text} for text in texts],
        }
        self.messages[(session_id, message_id)] = message
        return message

    async def create_session(self, title: str | None = None) -> SessionInfo:
        self._record("create_session", title)
        session = SessionInfo(id=f"ses_{next(self._ids)}", title=title)
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> SessionInfo | None:
        self._record("get_session", session_id)
        return self.sessions.get(session_id)

    async def list_sessions(self) -> list[SessionInfo]:
        self._record("list_sessions")
        return list(self.sessions.values())

    async def create_message(self, session_id: str, payload: Mapping[str, Any]) -> Any:
        self._record("create_message", session_id, payload)
        if self.on_create_message is not None:
            result = self.on_create_message(session_id, payload)
            if asyncio.iscoroutine(result):
                await result
        return None

    async def get_message(self, session_id: str, message_id: str) -> Message:
        self._record("get_message", session_id, message_id)
        try:
            return self.messages[(session_id, message_id)]
        except KeyError:
            raise LookupError(f"message {message_id} not found") from None

    async def abort_session(self, session_id: str) -> Any:
        self._record("abort_session", session_id)
        return True

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        payload: Mapping[str, Any],
    ) -> Any:
        self._record("respond_to_permission", session_id, permission_id, dict(payload))
        return True


def message_updated(session_id: str, message_id: str, role: str = "assistant") -> tuple[str, dict[str, Any]]:
    return MESSAGE_UPDATED, {"info": {"id": message_id, "sessionID": session_id, "role": role}}


def text_part(
    session_id: str,
    text: str,
    *,
    part_id: str | None = "p1",
    message_id: str | None = None,
) -> tuple[str, dict[str, Any]]:
    part: dict[str, Any] = {"sessionID": session_id, "type": "text", "text": text}
    if part_id is not None:
        part["id"] = part_id
    if message_id is not None:
        part["messageID"] = message_id
    return MESSAGE_PART_UPDATED, {"part": part}


def tool_part(
    session_id: str,
    tool: str,
    *,
    part_id: str | None = "t1",
    message_id: str | None = None,
    state: Mapping[str, Any] | None = None,
) -> tuple[str, dict[str, Any]]:
    part: dict[str, Any] = {"sessionID": session_id, "type": "tool", "tool": tool}
    if part_id is not None:
        part["id"] = part_id
    if message_id is not None:
        part["messageID"] = message_id
    if state is not None:
        part["state"] = dict(state)
    return MESSAGE_PART_UPDATED, {"part": part}


def permission_updated(
    session_id: str,
    permission_id: str,
    tool: str,
    *,
    title: str = "Permission Required",
    pattern: Any = None,
    message_id: str | None = None,
) -> tuple[str, dict[str, Any]]:
    payload: dict[str, Any] = {
        "id": permission_id,
        "sessionID": session_id,
        "type": tool,
        "title": title,
        "pattern": pattern,
    }
    if message_id is not None:
        payload["messageID"] = message_id
    return PERMISSION_UPDATED, payload


def permission_replied(session_id: str, permission_id: str) -> tuple[str, dict[str, Any]]:
    return PERMISSION_REPLIED, {"sessionID": session_id, "permissionID": permission_id}


def session_idle(session_id: str) -> tuple[str, dict[str, Any]]:
    return SESSION_IDLE, {"sessionID": session_id}


def session_error(session_id: str, error: Any = None) -> tuple[str, dict[str, Any]]:
    return SESSION_ERROR, {"sessionID": session_id, "error": error}


def publish(bus: InMemoryEventBus, *events: tuple[str, Mapping[str, Any]]) -> None:
    for topic, payload in events:
        bus.publish(topic, payload)


async def settle(rounds: int = 5) -> None:
    """Let deferred callbacks and the tasks they spawn run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


__all__ = [
    "FakeApiClient",
    "RecordedCall",
    "message_updated",
    "permission_replied",
    "permission_updated",
    "publish",
    "session_error",
    "session_idle",
    "settle",
    "text_part",
    "tool_part",
]
