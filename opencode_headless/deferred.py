"""Deferred execution of user callbacks on the running event loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger("opencode_headless.deferred")


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Deferrer(Protocol):
    def defer(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on the next loop iteration."""

    def defer_later(self, delay_s: float, callback: Callable[[], Any]) -> Cancellable:
        """Run ``callback`` after ``delay_s`` seconds."""


class LoopDeferrer:
    """Schedules callbacks with ``call_soon``/``call_later``.

    A callback returning an awaitable is driven as a task; tasks are kept
    referenced until they finish.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task[Any]] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def defer(self, callback: Callable[[], Any]) -> None:
        self._get_loop().call_soon(self._run, callback)

    def defer_later(self, delay_s: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(delay_s, self._run, callback)

    def _run(self, callback: Callable[[], Any]) -> None:
        try:
            result = callback()
        except Exception as exc:  # noqa: BLE001
            logger.error("deferred_callback_error", extra={"exception": exc})
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self._get_loop())
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("deferred_task_error", extra={"exception": exc})

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned by deferred callbacks."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["Cancellable", "Deferrer", "LoopDeferrer"]
