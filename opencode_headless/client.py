"""Session orchestration: caching, message building, and component wiring."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeVar

from .batch import BatchRequest, BatchResult, BatchScheduler
from .bus import EventBus, InMemoryEventBus
from .config import HeadlessConfig
from .context import PromptContext, format_parts
from .correlator import RequestResponseCorrelator
from .deferred import Deferrer, LoopDeferrer
from .errors import SessionNotFoundError
from .permissions import PermissionArbiter, PermissionCallback
from .retry import RetryPolicy
from .stream import StreamCallbacks, StreamHandle, StreamSession
from .transport import ApiClient, EventStreamPump, HttpApiClient
from .types import ChatResponse, Message, MessageChunk, SessionInfo, ToolCallInfo, empty_message

logger = logging.getLogger("opencode_headless.client")

T = TypeVar("T")


def build_message_payload(
    message: str,
    *,
    context: PromptContext | None = None,
    contexts: Sequence[PromptContext] | None = None,
    model: str | None = None,
    agent: str | None = None,
) -> dict[str, Any]:
    """Request body for ``create_message``; ``model`` is ``provider/model``."""

    if context is not None or contexts:
        parts = format_parts(message, context=context, contexts=contexts)
    else:
        parts = [{"type": "text", "text": message}]
    payload: dict[str, Any] = {"parts": parts}
    if model:
        provider, sep, model_id = model.partition("/")
        if sep and provider and model_id:
            payload["model"] = {"providerID": provider, "modelID": model_id}
    if agent:
        payload["agent"] = agent
    return payload


class HeadlessClient:
    """Drives a remote session API through the event bus.

    Owns the session cache and builds a correlator, stream session, or batch
    scheduler per call.
    """

    def __init__(
        self,
        *,
        api_client: ApiClient,
        bus: EventBus,
        config: HeadlessConfig | None = None,
        arbiter: PermissionArbiter | None = None,
        retry_policy: RetryPolicy | None = None,
        deferrer: Deferrer | None = None,
        event_pump: EventStreamPump | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or HeadlessConfig()
        self.api = api_client
        self.bus = bus
        self.arbiter = arbiter
        if self.arbiter is None and self.config.permissions is not None:
            self.arbiter = PermissionArbiter.from_config(self.config.permissions)
        self.retry_policy = retry_policy if retry_policy is not None else self.config.retry_policy()
        self.deferrer = deferrer or LoopDeferrer()
        self._event_pump = event_pump
        self._clock = clock
        self._sessions: dict[str, SessionInfo] = {}
        self._timestamps: dict[str, float] = {}
        self._stream_tasks: set[asyncio.Task[None]] = set()
        self.correlator = RequestResponseCorrelator(
            bus=bus,
            api_client=api_client,
            deferrer=self.deferrer,
            timeout_s=self.config.timeout_s,
        )

    @classmethod
    async def create(cls, config: HeadlessConfig | None = None, **kwargs: Any) -> HeadlessClient:
        """Build an HTTP-backed client and start consuming server events."""

        config = config or HeadlessConfig()
        bus = InMemoryEventBus()
        api_client = HttpApiClient(base_url=config.base_url, directory=config.directory, headers=config.headers)
        pump = EventStreamPump(bus=bus, base_url=config.base_url, directory=config.directory, headers=config.headers)
        pump.start()
        return cls(api_client=api_client, bus=bus, config=config, event_pump=pump, **kwargs)

    # -- session cache --------------------------------------------------

    def _cache_session(self, session: SessionInfo) -> SessionInfo:
        self._sessions[session.id] = session
        self._timestamps[session.id] = self._clock()
        return session

    def _is_cache_valid(self, session_id: str) -> bool:
        stamp = self._timestamps.get(session_id)
        if stamp is None:
            return False
        return self._clock() - stamp < self.config.session_cache_ttl_s

    def _get_cached_session(self, session_id: str) -> SessionInfo | None:
        if self._is_cache_valid(session_id):
            return self._sessions.get(session_id)
        self.invalidate_session(session_id)
        return None

    def invalidate_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._timestamps.pop(session_id, None)

    @property
    def cached_session_ids(self) -> list[str]:
        return [sid for sid in self._sessions if self._is_cache_valid(sid)]

    async def create_session(self, title: str | None = None) -> SessionInfo:
        session = await self.api.create_session(title)
        logger.debug("session_created", extra={"session_id": session.id})
        return self._cache_session(session)

    async def get_session(self, session_id: str) -> SessionInfo | None:
        cached = self._get_cached_session(session_id)
        if cached is not None:
            return cached
        session = await self.api.get_session(session_id)
        if session is not None:
            self._cache_session(session)
        return session

    async def list_sessions(self) -> list[SessionInfo]:
        return await self.api.list_sessions()

    async def _resolve_session(self, session_id: str | None, new_session: bool) -> SessionInfo:
        if session_id is not None:
            session = await self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session
        if not new_session:
            for cached_id in self.cached_session_ids:
                return self._sessions[cached_id]
        return await self.create_session()

    # -- single-shot ----------------------------------------------------

    async def chat(
        self,
        message: str,
        *,
        session_id: str | None = None,
        new_session: bool = True,
        context: PromptContext | None = None,
        contexts: Sequence[PromptContext] | None = None,
        model: str | None = None,
        agent: str | None = None,
        timeout_s: float | None = None,
    ) -> ChatResponse:
        session = await self._resolve_session(session_id, new_session)
        return await self.send_message(
            session.id,
            message,
            context=context,
            contexts=contexts,
            model=model,
            agent=agent,
            timeout_s=timeout_s,
        )

    async def send_message(
        self,
        session_id: str,
        message: str,
        *,
        context: PromptContext | None = None,
        contexts: Sequence[PromptContext] | None = None,
        model: str | None = None,
        agent: str | None = None,
        timeout_s: float | None = None,
    ) -> ChatResponse:
        if self._get_cached_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        self._timestamps[session_id] = self._clock()

        payload = build_message_payload(
            message,
            context=context,
            contexts=contexts,
            model=model or self.config.model,
            agent=agent or self.config.agent,
        )

        async def _send() -> ChatResponse:
            return await self.correlator.exchange(session_id, payload, timeout_s=timeout_s)

        if self.retry_policy is not None:
            return await self.retry_policy.run(_send)
        return await _send()

    # -- streaming ------------------------------------------------------

    def chat_stream(
        self,
        message: str,
        *,
        on_data: Callable[[MessageChunk], Any] | None = None,
        on_tool_call: Callable[[ToolCallInfo], Any] | None = None,
        on_permission: PermissionCallback | None = None,
        on_done: Callable[[Message], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        arbiter: PermissionArbiter | None = None,
        session_id: str | None = None,
        new_session: bool = True,
        context: PromptContext | None = None,
        contexts: Sequence[PromptContext] | None = None,
        model: str | None = None,
        agent: str | None = None,
    ) -> StreamHandle:
        """Start a streaming exchange and return its handle immediately."""

        handle = StreamHandle()
        callbacks = StreamCallbacks(
            on_data=on_data,
            on_tool_call=on_tool_call,
            on_permission=on_permission,
            on_done=on_done,
            on_error=on_error,
        )
        payload = build_message_payload(
            message,
            context=context,
            contexts=contexts,
            model=model or self.config.model,
            agent=agent or self.config.agent,
        )
        task = asyncio.get_running_loop().create_task(
            self._run_stream(handle, callbacks, payload, arbiter or self.arbiter, session_id, new_session),
            name="opencode-headless:stream",
        )
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)
        return handle

    async def _run_stream(
        self,
        handle: StreamHandle,
        callbacks: StreamCallbacks,
        payload: Mapping[str, Any],
        arbiter: PermissionArbiter | None,
        session_id: str | None,
        new_session: bool,
    ) -> None:
        try:
            session = await self._resolve_session(session_id, new_session)
        except Exception as exc:  # noqa: BLE001
            handle.settle(error=exc)
            self._defer_callback(callbacks.on_error, exc)
            return

        if handle.abort_requested:
            message = empty_message()
            handle.settle(result=message)
            self._defer_callback(callbacks.on_done, message)
            return

        stream = StreamSession(
            session.id,
            bus=self.bus,
            api_client=self.api,
            callbacks=callbacks,
            arbiter=arbiter,
            deferrer=self.deferrer,
        )
        handle.bind(stream)
        try:
            await self.api.create_message(session.id, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("stream_send_failed", extra={"session_id": session.id, "exception": exc})
            stream.fail(exc)

    def _defer_callback(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is not None:
            self.deferrer.defer(lambda: callback(*args))

    # -- batch ----------------------------------------------------------

    async def batch(
        self,
        requests: Sequence[BatchRequest],
        *,
        max_concurrent: int | None = None,
        fail_fast: bool = False,
    ) -> list[BatchResult]:
        async def _exchange(request: BatchRequest) -> ChatResponse:
            return await self.chat(
                request.message,
                context=request.context,
                contexts=request.contexts,
                model=request.model,
                agent=request.agent,
            )

        scheduler = BatchScheduler(
            _exchange,
            max_concurrent=max_concurrent or self.config.max_concurrent,
            fail_fast=fail_fast,
        )
        return await scheduler.run(requests)

    async def map(
        self,
        items: Sequence[T],
        build: Callable[[T, int], BatchRequest],
        *,
        max_concurrent: int | None = None,
        fail_fast: bool = False,
    ) -> list[BatchResult]:
        requests = [build(item, index) for index, item in enumerate(items)]
        return await self.batch(requests, max_concurrent=max_concurrent, fail_fast=fail_fast)

    # -- lifecycle ------------------------------------------------------

    async def abort(self, session_id: str | None = None) -> bool:
        """Abort one session, or every cached session when ``session_id`` is omitted."""

        targets = [session_id] if session_id is not None else list(self._sessions)
        if not targets:
            return True
        outcomes = await asyncio.gather(
            *(self.api.abort_session(sid) for sid in targets),
            return_exceptions=True,
        )
        failed = [sid for sid, outcome in zip(targets, outcomes) if isinstance(outcome, BaseException)]
        for sid in failed:
            logger.warning("session_abort_failed", extra={"session_id": sid})
        return not failed

    async def close(self) -> None:
        if self._event_pump is not None:
            await self._event_pump.stop()
        self._sessions.clear()
        self._timestamps.clear()
        aclose = getattr(self.api, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> HeadlessClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = ["HeadlessClient", "build_message_payload"]
