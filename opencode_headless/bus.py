"""Publish/subscribe bus carrying server events to correlators."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger("opencode_headless.bus")

MESSAGE_UPDATED = "message.updated"
MESSAGE_PART_UPDATED = "message.part.updated"
PERMISSION_UPDATED = "permission.updated"
PERMISSION_REPLIED = "permission.replied"
SESSION_IDLE = "session.idle"
SESSION_ERROR = "session.error"

EventHandler = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True, slots=True)
class Subscription:
    """Token returned by :meth:`EventBus.subscribe`; release it to unsubscribe."""

    topic: str
    token: int


class EventBus(Protocol):
    def subscribe(self, topic: str, handler: EventHandler) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...


class InMemoryEventBus:
    """Synchronous in-process bus keyed by subscription token.

    Delivery is in publish order per topic. Handlers registered or released
    during a dispatch take effect on the next publish.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, dict[int, EventHandler]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        token = next(self._tokens)
        self._handlers.setdefault(topic, {})[token] = handler
        return Subscription(topic=topic, token=token)

    def unsubscribe(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.topic)
        if not handlers:
            return
        handlers.pop(subscription.token, None)
        if not handlers:
            del self._handlers[subscription.topic]

    def publish(self, topic: str, payload: Mapping[str, Any]) -> int:
        handlers = list(self._handlers.get(topic, {}).values())
        for handler in handlers:
            try:
                handler(payload)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "bus_handler_error",
                    extra={"topic": topic, "exception": exc},
                )
        return len(handlers)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._handlers.get(topic, {}))
        return sum(len(handlers) for handlers in self._handlers.values())

    def clear(self) -> None:
        self._handlers.clear()


__all__ = [
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
    "MESSAGE_PART_UPDATED",
    "MESSAGE_UPDATED",
    "PERMISSION_REPLIED",
    "PERMISSION_UPDATED",
    "SESSION_ERROR",
    "SESSION_IDLE",
    "Subscription",
]
