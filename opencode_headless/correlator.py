"""Single-shot request/response correlation over the event bus."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from .bus import MESSAGE_UPDATED, SESSION_ERROR, SESSION_IDLE, EventBus, Subscription
from .deferred import Cancellable, Deferrer, LoopDeferrer
from .errors import NoResponseError, RequestTimeoutError, TransportError, UpstreamError
from .transport import ApiClient
from .types import ChatResponse, extract_text

logger = logging.getLogger("opencode_headless.correlator")


class _Exchange:
    """State for one in-flight exchange; settles its future exactly once."""

    def __init__(self, owner: RequestResponseCorrelator, session_id: str) -> None:
        self.owner = owner
        self.session_id = session_id
        self.future: asyncio.Future[ChatResponse] = asyncio.get_running_loop().create_future()
        self.assistant_message_id: str | None = None
        self.subscriptions: list[Subscription] = []
        self.timer: Cancellable | None = None
        self.closed = False

    def open(self, timeout_s: float | None) -> None:
        bus = self.owner.bus
        self.subscriptions = [
            bus.subscribe(MESSAGE_UPDATED, self.on_message_updated),
            bus.subscribe(SESSION_IDLE, self.on_session_idle),
            bus.subscribe(SESSION_ERROR, self.on_session_error),
        ]
        if timeout_s is not None and timeout_s > 0:
            self.timer = self.owner.deferrer.defer_later(timeout_s, lambda: self.on_timeout(timeout_s))

    def close(self) -> bool:
        """Release the timer and subscriptions; ``False`` if already closed."""

        if self.closed:
            return False
        self.closed = True
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            self.owner.bus.unsubscribe(subscription)
        return True

    def resolve(self, response: ChatResponse) -> None:
        if not self.future.done():
            self.future.set_result(response)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    def on_message_updated(self, data: Mapping[str, Any]) -> None:
        info = data.get("info")
        if not isinstance(info, Mapping):
            return
        if info.get("sessionID") == self.session_id and info.get("role") == "assistant" and info.get("id"):
            self.assistant_message_id = str(info["id"])

    def on_session_idle(self, data: Mapping[str, Any]) -> None:
        if data.get("sessionID") != self.session_id or not self.close():
            return
        message_id = self.assistant_message_id
        if message_id is None:
            self.reject(NoResponseError(self.session_id))
            return
        self.owner.deferrer.defer(lambda: self.fetch(message_id))

    def on_session_error(self, data: Mapping[str, Any]) -> None:
        if data.get("sessionID") != self.session_id or not self.close():
            return
        self.reject(UpstreamError(self.session_id, data.get("error")))

    def on_timeout(self, timeout_s: float) -> None:
        self.timer = None
        if not self.close():
            return
        logger.warning("exchange_timeout", extra={"session_id": self.session_id, "timeout_s": timeout_s})
        self.reject(RequestTimeoutError(timeout_s, session_id=self.session_id))

    async def fetch(self, message_id: str) -> None:
        try:
            message = await self.owner.api.get_message(self.session_id, message_id)
        except Exception as exc:  # noqa: BLE001
            self.reject(
                exc
                if isinstance(exc, TransportError)
                else TransportError("get_message", f"failed to fetch complete message: {exc}")
            )
            return
        self.resolve(ChatResponse(text=extract_text(message), message=message, session_id=self.session_id))

    async def send(self, payload: Mapping[str, Any]) -> None:
        try:
            await self.owner.api.create_message(self.session_id, payload)
        except Exception as exc:  # noqa: BLE001
            self.close()
            self.reject(exc if isinstance(exc, TransportError) else TransportError("create_message", str(exc)))


class RequestResponseCorrelator:
    """Sends one message and waits for its terminal bus event."""

    def __init__(
        self,
        *,
        bus: EventBus,
        api_client: ApiClient,
        deferrer: Deferrer | None = None,
        timeout_s: float | None = 120.0,
    ) -> None:
        self.bus = bus
        self.api = api_client
        self.deferrer = deferrer or LoopDeferrer()
        self.timeout_s = timeout_s

    async def exchange(
        self,
        session_id: str,
        payload: Mapping[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> ChatResponse:
        exchange = _Exchange(self, session_id)
        exchange.open(timeout_s if timeout_s is not None else self.timeout_s)
        send_task = asyncio.ensure_future(exchange.send(payload))
        try:
            return await exchange.future
        finally:
            exchange.close()
            if not send_task.done():
                send_task.cancel()


__all__ = ["RequestResponseCorrelator"]
