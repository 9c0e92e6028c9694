"""Bounded-concurrency batch execution of single-shot exchanges."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from .context import PromptContext
from .errors import BatchFailFastError
from .types import ChatResponse

logger = logging.getLogger("opencode_headless.batch")

DEFAULT_MAX_CONCURRENT = 5

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BatchRequest:
    message: str
    context: PromptContext | None = None
    contexts: Sequence[PromptContext] | None = None
    model: str | None = None
    agent: str | None = None


@dataclass(frozen=True, slots=True)
class BatchResult:
    index: int
    success: bool
    response: ChatResponse | None = None
    error: BaseException | None = None


Exchange = Callable[[BatchRequest], Awaitable[ChatResponse]]


class BatchScheduler:
    """Runs requests in sequential waves of at most ``max_concurrent``.

    Results are stored by request index, so the returned list always matches
    the input order. With ``fail_fast`` the first failing wave stops the batch
    and :class:`BatchFailFastError` carries the progress made so far.
    """

    def __init__(
        self,
        exchange: Exchange,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        fail_fast: bool = False,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._exchange = exchange
        self._max_concurrent = max_concurrent
        self._fail_fast = fail_fast

    async def _attempt(self, index: int, request: BatchRequest) -> BatchResult:
        try:
            response = await self._exchange(request)
        except Exception as exc:  # noqa: BLE001
            logger.debug("batch_request_failed", extra={"index": index, "error_type": exc.__class__.__name__})
            return BatchResult(index=index, success=False, error=exc)
        return BatchResult(index=index, success=True, response=response)

    async def run(self, requests: Sequence[BatchRequest]) -> list[BatchResult]:
        results = [BatchResult(index=i, success=False) for i in range(len(requests))]
        for start in range(0, len(requests), self._max_concurrent):
            end = min(start + self._max_concurrent, len(requests))
            wave = await asyncio.gather(
                *(self._attempt(index, requests[index]) for index in range(start, end))
            )
            first_error: BaseException | None = None
            for result in wave:
                results[result.index] = result
                if first_error is None and not result.success:
                    first_error = result.error
            if self._fail_fast and first_error is not None:
                logger.warning("batch_fail_fast", extra={"completed_count": end, "total": len(requests)})
                raise BatchFailFastError(first_error, partial_results=results[:end], completed_count=end)
        return results

    async def map(self, items: Sequence[T], build: Callable[[T, int], BatchRequest]) -> list[BatchResult]:
        return await self.run([build(item, index) for index, item in enumerate(items)])


__all__ = ["BatchRequest", "BatchResult", "BatchScheduler", "DEFAULT_MAX_CONCURRENT", "Exchange"]
