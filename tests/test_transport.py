from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from opencode_headless.bus import InMemoryEventBus
from opencode_headless.errors import TransportError
from opencode_headless.transport import EventStreamPump, HttpApiClient, parse_sse_line


class Recorder:
    def __init__(self, responder: Any) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)


def _api(responder: Any, **kwargs: Any) -> tuple[HttpApiClient, Recorder]:
    recorder = Recorder(responder)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return HttpApiClient(base_url="http://opencode.test/", client=client, **kwargs), recorder


@pytest.mark.asyncio
async def test_create_session_posts_title_and_directory() -> None:
    api, recorder = _api(
        lambda _req: httpx.Response(200, json={"id": "ses_1", "title": "demo", "version": "1"}),
        directory="/work",
    )

    session = await api.create_session("demo")

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/session"
    assert request.url.params["directory"] == "/work"
    assert json.loads(request.content) == {"title": "demo"}
    assert session.id == "ses_1"
    assert session.model_extra == {"version": "1"}


@pytest.mark.asyncio
async def test_get_session_missing_returns_none() -> None:
    api, _recorder = _api(lambda _req: httpx.Response(404, json={"message": "not found"}))

    assert await api.get_session("ses_x") is None


@pytest.mark.asyncio
async def test_list_sessions() -> None:
    api, _recorder = _api(lambda _req: httpx.Response(200, json=[{"id": "a"}, {"id": "b", "title": "B"}]))

    sessions = await api.list_sessions()

    assert [(s.id, s.title) for s in sessions] == [("a", None), ("b", "B")]


@pytest.mark.asyncio
async def test_message_endpoints() -> None:
    message = {"info": {"id": "m1", "role": "assistant"}, "parts": [{"type": "text", "text": "hi"}]}

    def respond(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=message)
        return httpx.Response(200, json=True)

    api, recorder = _api(respond)

    await api.create_message("ses_1", {"parts": [{"type": "text", "text": "hello"}]})
    assert await api.get_message("ses_1", "m1") == message
    await api.abort_session("ses_1")
    await api.respond_to_permission("ses_1", "perm_1", {"approval": "allow"})

    paths = [(r.method, r.url.path) for r in recorder.requests]
    assert paths == [
        ("POST", "/session/ses_1/message"),
        ("GET", "/session/ses_1/message/m1"),
        ("POST", "/session/ses_1/abort"),
        ("POST", "/session/ses_1/permissions/perm_1"),
    ]
    assert json.loads(recorder.requests[-1].content) == {"approval": "allow"}


@pytest.mark.asyncio
async def test_error_status_raises_transport_error() -> None:
    api, _recorder = _api(lambda _req: httpx.Response(500, json={"message": "boom"}))

    with pytest.raises(TransportError) as excinfo:
        await api.create_message("ses_1", {"parts": []})

    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "create_message failed (500): boom"


@pytest.mark.asyncio
async def test_connection_errors_raise_transport_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api, _recorder = _api(refuse)

    with pytest.raises(TransportError, match="ConnectError: connection refused"):
        await api.list_sessions()


@pytest.mark.asyncio
async def test_non_mapping_message_payload_is_rejected() -> None:
    api, _recorder = _api(lambda _req: httpx.Response(200, json=["not", "a", "message"]))

    with pytest.raises(TransportError, match="unexpected response payload"):
        await api.get_message("ses_1", "m1")


def test_parse_sse_line() -> None:
    line = 'data: {"type": "session.idle", "properties": {"sessionID": "s1"}}'

    assert parse_sse_line(line) == ("session.idle", {"sessionID": "s1"})
    assert parse_sse_line('data: {"type": "server.connected"}') == ("server.connected", {})
    assert parse_sse_line("event: message") is None
    assert parse_sse_line("data: ") is None
    assert parse_sse_line('data: {"properties": {}}') is None
    assert parse_sse_line("data: [1, 2]") is None


@pytest.mark.asyncio
async def test_event_pump_publishes_decoded_events() -> None:
    body = "\n".join(
        [
            'data: {"type": "message.updated", "properties": {"info": {"id": "m1"}}}',
            "",
            "data: {not json",
            "",
            ": keep-alive",
            'data: {"type": "session.idle", "properties": {"sessionID": "s1"}}',
            "",
        ]
    )
    recorder = Recorder(lambda _req: httpx.Response(200, text=body, headers={"content-type": "text/event-stream"}))
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    bus = InMemoryEventBus()
    seen: list[tuple[str, Any]] = []
    bus.subscribe("message.updated", lambda payload: seen.append(("message.updated", payload)))
    bus.subscribe("session.idle", lambda payload: seen.append(("session.idle", payload)))

    pump = EventStreamPump(bus=bus, base_url="http://opencode.test", directory="/work", client=client)

    assert await pump.consume() == 2
    assert seen == [
        ("message.updated", {"info": {"id": "m1"}}),
        ("session.idle", {"sessionID": "s1"}),
    ]
    assert recorder.requests[0].url.path == "/event"
    assert recorder.requests[0].url.params["directory"] == "/work"


@pytest.mark.asyncio
async def test_event_pump_error_status() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda _req: httpx.Response(503, text="down")))
    pump = EventStreamPump(bus=InMemoryEventBus(), client=client)

    with pytest.raises(TransportError) as excinfo:
        await pump.consume()
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_event_pump_start_and_stop() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda _req: httpx.Response(200, text="")))
    pump = EventStreamPump(bus=InMemoryEventBus(), client=client, reconnect_delay_s=0.01)

    pump.start()
    assert pump.running
    await pump.stop()
    assert not pump.running
