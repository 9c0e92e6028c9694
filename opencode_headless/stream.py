"""Streaming exchange correlation.

A :class:`StreamSession` listens to the bus for one session, reconstructs the
assistant's text and tool calls from repeated full-content part updates, and
reaches exactly one terminal outcome. :class:`StreamHandle` is the caller-facing
proxy that exists before the session has been created.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .bus import (
    MESSAGE_PART_UPDATED,
    MESSAGE_UPDATED,
    PERMISSION_REPLIED,
    PERMISSION_UPDATED,
    SESSION_ERROR,
    SESSION_IDLE,
    EventBus,
    Subscription,
)
from .deferred import Deferrer, LoopDeferrer
from .errors import CancelledByCaller, TransportError, UpstreamError
from .permissions import PermissionArbiter, PermissionCallback, PermissionStrategy
from .transport import ApiClient
from .types import (
    Message,
    MessageChunk,
    Part,
    PermissionAction,
    PermissionRequest,
    StreamState,
    ToolCallInfo,
    empty_message,
)

logger = logging.getLogger("opencode_headless.stream")

DEFAULT_TEXT_PART_ID = "default_text"


@dataclass(slots=True)
class StreamCallbacks:
    on_data: Callable[[MessageChunk], Any] | None = None
    on_tool_call: Callable[[ToolCallInfo], Any] | None = None
    on_permission: PermissionCallback | None = None
    on_done: Callable[[Message], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


def text_delta(previous: str, current: str) -> str:
    """Text to report for a part whose content went from ``previous`` to ``current``."""

    if current == previous:
        return ""
    if len(current) > len(previous) and current.startswith(previous):
        return current[len(previous) :]
    return current


class StreamSession:
    """Correlates bus events for one streaming exchange."""

    def __init__(
        self,
        session_id: str,
        *,
        bus: EventBus,
        api_client: ApiClient,
        callbacks: StreamCallbacks | None = None,
        arbiter: PermissionArbiter | None = None,
        deferrer: Deferrer | None = None,
    ) -> None:
        self.session_id = session_id
        self._bus = bus
        self._api = api_client
        self._callbacks = callbacks or StreamCallbacks()
        self._arbiter = arbiter
        if self._arbiter is None and self._callbacks.on_permission is not None:
            self._arbiter = PermissionArbiter(
                strategy=PermissionStrategy.CALLBACK,
                callback=self._callbacks.on_permission,
            )
        self._deferrer = deferrer or LoopDeferrer()

        self._message_id: str | None = None
        self._state = StreamState.PENDING
        self._text_parts: dict[str, str] = {}
        self._text_order: list[str] = []
        self._partial_text = ""
        self._tool_calls: dict[str, ToolCallInfo] = {}
        self._pending_permissions: set[str] = set()
        self._buffered: list[Part] = []
        self._subscriptions: list[Subscription] = []

        self._finished = asyncio.Event()
        self._result: Message | None = None
        self._error: BaseException | None = None

        self._subscribe()

    # -- public surface -------------------------------------------------

    @property
    def message_id(self) -> str | None:
        return self._message_id

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def pending_permissions(self) -> frozenset[str]:
        return frozenset(self._pending_permissions)

    def is_done(self) -> bool:
        return self._state.is_terminal

    def is_ready(self) -> bool:
        return True

    def get_partial_text(self) -> str:
        return self._partial_text

    def get_tool_calls(self) -> dict[str, ToolCallInfo]:
        return dict(self._tool_calls)

    async def abort(self) -> bool:
        if not self._transition(StreamState.ABORTED):
            return False
        self._settle(error=CancelledByCaller(self.session_id))
        try:
            await self._api.abort_session(self.session_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "stream_abort_failed",
                extra={"session_id": self.session_id, "exception": exc},
            )
        return True

    def fail(self, error: BaseException) -> bool:
        """Terminate locally with ``error``, e.g. when the message could not be sent."""

        if not self._transition(StreamState.FAILED):
            return False
        self._settle(error=error)
        self._notify(self._callbacks.on_error, error)
        return True

    async def wait(self) -> Message:
        """Wait for the terminal outcome; raise the error for FAILED/ABORTED."""

        await self._finished.wait()
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    # -- subscription lifecycle -----------------------------------------

    def _subscribe(self) -> None:
        handlers = (
            (MESSAGE_UPDATED, self._on_message_updated),
            (MESSAGE_PART_UPDATED, self._on_part_updated),
            (PERMISSION_UPDATED, self._on_permission_updated),
            (PERMISSION_REPLIED, self._on_permission_replied),
            (SESSION_IDLE, self._on_session_idle),
            (SESSION_ERROR, self._on_session_error),
        )
        for topic, handler in handlers:
            self._subscriptions.append(self._bus.subscribe(topic, handler))

    def _release(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            self._bus.unsubscribe(subscription)

    def _transition(self, state: StreamState) -> bool:
        """Move to ``state``; terminal states are entered at most once."""

        if self._state.is_terminal:
            return False
        self._state = state
        if state.is_terminal:
            self._release()
            self._buffered.clear()
            logger.debug(
                "stream_terminal",
                extra={"session_id": self.session_id, "message_id": self._message_id, "state": state.value},
            )
        return True

    def _settle(self, *, result: Message | None = None, error: BaseException | None = None) -> None:
        if self._finished.is_set():
            return
        self._result = result
        self._error = error
        self._finished.set()

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        self._deferrer.defer(lambda: callback(*args))

    # -- bus handlers ---------------------------------------------------

    def _on_message_updated(self, data: Mapping[str, Any]) -> None:
        if self._state.is_terminal:
            return
        info = data.get("info")
        if not isinstance(info, Mapping):
            return
        if info.get("sessionID") != self.session_id or info.get("role") != "assistant":
            return
        message_id = info.get("id")
        if self._message_id is None and message_id:
            self._resolve_message_id(str(message_id))

    def _on_part_updated(self, data: Mapping[str, Any]) -> None:
        if self._state.is_terminal:
            return
        part = data.get("part")
        if not isinstance(part, Mapping) or part.get("sessionID") != self.session_id:
            return

        part_message_id = part.get("messageID")
        if self._message_id is None:
            if part_message_id:
                self._buffered.append(part)
                self._resolve_message_id(str(part_message_id))
                return
            # Id-less parts are accepted before resolution; they may belong to
            # an overlapping turn on the same session.
        elif part_message_id and part_message_id != self._message_id:
            logger.debug(
                "stream_part_dropped",
                extra={"session_id": self.session_id, "message_id": part_message_id},
            )
            return

        self._process_part(part)

    def _resolve_message_id(self, message_id: str) -> None:
        self._message_id = message_id
        if self._state is StreamState.PENDING:
            self._transition(StreamState.STREAMING)
        buffered, self._buffered = self._buffered, []
        for part in buffered:
            part_message_id = part.get("messageID")
            if part_message_id and part_message_id != message_id:
                continue
            self._process_part(part)

    def _process_part(self, part: Part) -> None:
        if self._state is StreamState.PENDING:
            self._transition(StreamState.STREAMING)
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            self._process_text(part)
        elif part_type == "tool" and part.get("tool"):
            self._process_tool(part)

    def _process_text(self, part: Part) -> None:
        part_id = str(part.get("id") or DEFAULT_TEXT_PART_ID)
        content: str = part["text"]
        previous = self._text_parts.get(part_id)
        if previous is None:
            self._text_order.append(part_id)
            previous = ""
        self._text_parts[part_id] = content
        self._partial_text = "".join(self._text_parts[pid] for pid in self._text_order)

        delta = text_delta(previous, content)
        if delta:
            self._notify(self._callbacks.on_data, MessageChunk(type="text", text=delta, part=part))

    def _process_tool(self, part: Part) -> None:
        tool_id = str(part.get("id") or part.get("callID") or "unknown")
        state = part.get("state")
        if not isinstance(state, Mapping):
            state = {}
        tool_input = state.get("input")
        tool_call = ToolCallInfo(
            id=tool_id,
            name=str(part.get("tool") or "unknown"),
            status=str(state.get("status") or "unknown"),
            input=dict(tool_input) if isinstance(tool_input, Mapping) else {},
            output=state.get("output"),
            error=state.get("error"),
        )
        self._tool_calls[tool_id] = tool_call
        self._notify(self._callbacks.on_tool_call, tool_call)

    def _on_permission_updated(self, data: Mapping[str, Any]) -> None:
        if self._state.is_terminal or data.get("sessionID") != self.session_id:
            return
        permission_id = data.get("id")
        if not permission_id:
            return
        permission_id = str(permission_id)
        self._pending_permissions.add(permission_id)
        request = PermissionRequest(
            id=permission_id,
            session_id=self.session_id,
            message_id=data.get("messageID") or self._message_id,
            tool_name=str(data.get("type") or "unknown"),
            title=str(data.get("title") or "Permission Required"),
            type=str(data.get("type") or "tool"),
            pattern=data.get("pattern"),
        )
        self._deferrer.defer(lambda: self._arbitrate(request))

    def _on_permission_replied(self, data: Mapping[str, Any]) -> None:
        if data.get("sessionID") != self.session_id:
            return
        self._pending_permissions.discard(str(data.get("permissionID")))

    def _on_session_idle(self, data: Mapping[str, Any]) -> None:
        if data.get("sessionID") != self.session_id:
            return
        if not self._transition(StreamState.COMPLETED):
            return
        message_id = self._message_id
        if message_id is None:
            message = empty_message()
            self._settle(result=message)
            self._notify(self._callbacks.on_done, message)
            return
        self._deferrer.defer(lambda: self._fetch_final(message_id))

    def _on_session_error(self, data: Mapping[str, Any]) -> None:
        if data.get("sessionID") != self.session_id:
            return
        self.fail(UpstreamError(self.session_id, data.get("error")))

    # -- async follow-ups -----------------------------------------------

    async def _fetch_final(self, message_id: str) -> None:
        try:
            message = await self._api.get_message(self.session_id, message_id)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, TransportError) else TransportError("get_message", str(exc))
            self._settle(error=error)
            self._notify(self._callbacks.on_error, error)
            return
        self._settle(result=message)
        self._notify(self._callbacks.on_done, message)

    async def _arbitrate(self, request: PermissionRequest) -> None:
        action = PermissionAction.REJECT
        if self._arbiter is not None:
            try:
                action = await self._arbiter.resolve(request)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "permission_resolution_failed",
                    extra={"session_id": self.session_id, "permission_id": request.id, "exception": exc},
                )
        self._pending_permissions.discard(request.id)
        try:
            await self._api.respond_to_permission(
                self.session_id,
                request.id,
                {"approval": action.approval},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "permission_reply_failed",
                extra={"session_id": self.session_id, "permission_id": request.id, "exception": exc},
            )


@dataclass(slots=True)
class NotReady:
    pending_abort: bool = False


@dataclass(slots=True)
class Ready:
    session: StreamSession


class StreamHandle:
    """Caller-facing handle for a streaming exchange whose session may not exist yet."""

    def __init__(self) -> None:
        self._slot: NotReady | Ready = NotReady()
        self._settled = asyncio.Event()
        self._result: Message | None = None
        self._error: BaseException | None = None

    @property
    def abort_requested(self) -> bool:
        return isinstance(self._slot, NotReady) and self._slot.pending_abort

    @property
    def session(self) -> StreamSession | None:
        if isinstance(self._slot, Ready):
            return self._slot.session
        return None

    def bind(self, session: StreamSession) -> None:
        if isinstance(self._slot, Ready):
            raise RuntimeError("StreamHandle already bound")
        self._slot = Ready(session)
        self._settled.set()

    def settle(self, *, result: Message | None = None, error: BaseException | None = None) -> None:
        """Record an outcome reached without ever binding a session."""

        if isinstance(self._slot, Ready) or self._settled.is_set():
            return
        self._result = result
        self._error = error
        self._settled.set()

    def is_ready(self) -> bool:
        return isinstance(self._slot, Ready)

    def is_done(self) -> bool:
        slot = self._slot
        if isinstance(slot, Ready):
            return slot.session.is_done()
        return slot.pending_abort or self._settled.is_set()

    async def abort(self) -> bool:
        slot = self._slot
        if isinstance(slot, Ready):
            return await slot.session.abort()
        if slot.pending_abort or self._settled.is_set():
            return False
        slot.pending_abort = True
        return True

    def get_partial_text(self) -> str:
        slot = self._slot
        if isinstance(slot, Ready):
            return slot.session.get_partial_text()
        return ""

    def get_tool_calls(self) -> dict[str, ToolCallInfo]:
        slot = self._slot
        if isinstance(slot, Ready):
            return slot.session.get_tool_calls()
        return {}

    @property
    def message_id(self) -> str | None:
        slot = self._slot
        if isinstance(slot, Ready):
            return slot.session.message_id
        return None

    @property
    def state(self) -> StreamState:
        slot = self._slot
        if isinstance(slot, Ready):
            return slot.session.state
        return StreamState.PENDING

    async def wait(self) -> Message:
        await self._settled.wait()
        slot = self._slot
        if isinstance(slot, Ready):
            return await slot.session.wait()
        if self._error is not None:
            raise self._error
        return self._result if self._result is not None else empty_message()


__all__ = [
    "DEFAULT_TEXT_PART_ID",
    "NotReady",
    "Ready",
    "StreamCallbacks",
    "StreamHandle",
    "StreamSession",
    "text_delta",
]
