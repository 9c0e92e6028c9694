from __future__ import annotations

import asyncio

import pytest

from opencode_headless.batch import BatchRequest, BatchScheduler
from opencode_headless.errors import BatchFailFastError
from opencode_headless.types import ChatResponse


def _response(text: str) -> ChatResponse:
    return ChatResponse(text=text, message={"parts": [{"type": "text", "text": text}]}, session_id="s")


@pytest.mark.asyncio
async def test_results_follow_request_order() -> None:
    async def exchange(request: BatchRequest) -> ChatResponse:
        await asyncio.sleep(0.01 * (3 - int(request.message)))
        return _response(request.message)

    scheduler = BatchScheduler(exchange, max_concurrent=3)
    results = await scheduler.run([BatchRequest(str(i)) for i in range(3)])

    assert [r.index for r in results] == [0, 1, 2]
    assert [r.response.text for r in results if r.response] == ["0", "1", "2"]
    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit() -> None:
    in_flight = 0
    peak = 0

    async def exchange(request: BatchRequest) -> ChatResponse:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return _response(request.message)

    scheduler = BatchScheduler(exchange, max_concurrent=2)
    results = await scheduler.run([BatchRequest(f"q{i}") for i in range(5)])

    assert peak == 2
    assert len(results) == 5


@pytest.mark.asyncio
async def test_best_effort_collects_failures() -> None:
    async def exchange(request: BatchRequest) -> ChatResponse:
        if request.message == "bad":
            raise RuntimeError("upstream exploded")
        return _response(request.message.upper())

    scheduler = BatchScheduler(exchange)
    results = await scheduler.run([BatchRequest("a"), BatchRequest("bad"), BatchRequest("c")])

    assert [r.success for r in results] == [True, False, True]
    assert str(results[1].error) == "upstream exploded"
    assert results[1].response is None
    assert results[2].response is not None and results[2].response.text == "C"


@pytest.mark.asyncio
async def test_fail_fast_stops_after_failing_wave() -> None:
    started: list[str] = []

    async def exchange(request: BatchRequest) -> ChatResponse:
        started.append(request.message)
        if request.message in {"q2", "q3"}:
            raise RuntimeError(f"{request.message} failed")
        return _response(request.message)

    scheduler = BatchScheduler(exchange, max_concurrent=2, fail_fast=True)

    with pytest.raises(BatchFailFastError) as excinfo:
        await scheduler.run([BatchRequest(f"q{i}") for i in range(6)])

    error = excinfo.value
    assert error.completed_count == 4
    assert str(error.error) == "q2 failed"
    assert [r.success for r in error.partial_results] == [True, True, False, False]
    assert sorted(started) == ["q0", "q1", "q2", "q3"]


@pytest.mark.asyncio
async def test_empty_batch_returns_empty_list() -> None:
    async def exchange(_request: BatchRequest) -> ChatResponse:
        raise AssertionError("not called")

    assert await BatchScheduler(exchange).run([]) == []


@pytest.mark.asyncio
async def test_map_builds_requests_with_index() -> None:
    async def exchange(request: BatchRequest) -> ChatResponse:
        return _response(request.message)

    scheduler = BatchScheduler(exchange)
    results = await scheduler.map(["x", "y"], lambda item, index: BatchRequest(f"{index}:{item}"))

    assert [r.response.text for r in results if r.response] == ["0:x", "1:y"]


def test_max_concurrent_must_be_positive() -> None:
    async def exchange(request: BatchRequest) -> ChatResponse:
        return _response(request.message)

    with pytest.raises(ValueError):
        BatchScheduler(exchange, max_concurrent=0)


@pytest.mark.asyncio
async def test_sequential_batch_modes_with_middle_failure() -> None:
    async def exchange(request: BatchRequest) -> ChatResponse:
        if request.message == "second":
            raise RuntimeError("second failed")
        return _response(request.message)

    requests = [BatchRequest("first"), BatchRequest("second"), BatchRequest("third")]

    best_effort = await BatchScheduler(exchange, max_concurrent=1).run(requests)
    assert [r.success for r in best_effort] == [True, False, True]

    with pytest.raises(BatchFailFastError) as excinfo:
        await BatchScheduler(exchange, max_concurrent=1, fail_fast=True).run(requests)
    partial = excinfo.value.partial_results
    assert len(partial) == 2
    assert partial[0].success and not partial[1].success
