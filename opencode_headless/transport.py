"""API client protocol, httpx adapter, and the server-sent event pump."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .errors import TransportError
from .types import Message, SessionInfo

logger = logging.getLogger("opencode_headless.transport")

DEFAULT_BASE_URL = "http://127.0.0.1:4096"


class ApiClient(Protocol):
    """Minimal remote API surface used by the correlators."""

    async def create_session(self, title: str | None = None) -> SessionInfo: ...

    async def get_session(self, session_id: str) -> SessionInfo | None: ...

    async def list_sessions(self) -> list[SessionInfo]: ...

    async def create_message(self, session_id: str, payload: Mapping[str, Any]) -> Any: ...

    async def get_message(self, session_id: str, message_id: str) -> Message: ...

    async def abort_session(self, session_id: str) -> Any: ...

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        payload: Mapping[str, Any],
    ) -> Any: ...


class EventPublisher(Protocol):
    def publish(self, topic: str, payload: Mapping[str, Any]) -> Any: ...


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _raise_for_status(operation: str, response: httpx.Response) -> None:
    if 200 <= response.status_code < 300:
        return
    detail = None
    body = response.text
    if body:
        try:
            payload = json.loads(body)
            if isinstance(payload, Mapping):
                detail = payload.get("detail") or payload.get("message") or payload.get("title")
        except json.JSONDecodeError:
            detail = body[:200]
    raise TransportError(operation, detail and str(detail), status_code=response.status_code)


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except json.JSONDecodeError:
        return None


@dataclass(slots=True)
class HttpApiClient:
    """httpx-backed :class:`ApiClient` for the session HTTP API."""

    base_url: str = DEFAULT_BASE_URL
    directory: str | None = None
    headers: Mapping[str, str] | None = None
    timeout_s: float | None = 30.0
    client: httpx.AsyncClient | None = None
    _owned: httpx.AsyncClient | None = field(default=None, init=False, repr=False)

    def _url(self, path: str) -> str:
        return f"{_normalize_base_url(self.base_url)}{path}"

    def _params(self) -> dict[str, str]:
        return {"directory": self.directory} if self.directory else {}

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is not None:
            return self.client
        if self._owned is None:
            self._owned = httpx.AsyncClient(timeout=self.timeout_s, headers=dict(self.headers or {}))
        return self._owned

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        allow_missing: bool = False,
    ) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, self._url(path), params=self._params(), json=json_body)
        except httpx.HTTPError as exc:
            raise TransportError(operation, f"{exc.__class__.__name__}: {exc}") from exc
        if allow_missing and response.status_code == 404:
            return None
        _raise_for_status(operation, response)
        return _json_or_none(response)

    async def create_session(self, title: str | None = None) -> SessionInfo:
        body = {"title": title} if title else {}
        data = await self._request("create_session", "POST", "/session", json_body=body)
        return SessionInfo.model_validate(data)

    async def get_session(self, session_id: str) -> SessionInfo | None:
        data = await self._request("get_session", "GET", f"/session/{session_id}", allow_missing=True)
        if data is None:
            return None
        return SessionInfo.model_validate(data)

    async def list_sessions(self) -> list[SessionInfo]:
        data = await self._request("list_sessions", "GET", "/session")
        return [SessionInfo.model_validate(item) for item in data or []]

    async def create_message(self, session_id: str, payload: Mapping[str, Any]) -> Any:
        return await self._request(
            "create_message",
            "POST",
            f"/session/{session_id}/message",
            json_body=dict(payload),
        )

    async def get_message(self, session_id: str, message_id: str) -> Message:
        data = await self._request("get_message", "GET", f"/session/{session_id}/message/{message_id}")
        if not isinstance(data, Mapping):
            raise TransportError("get_message", "unexpected response payload")
        return data

    async def abort_session(self, session_id: str) -> Any:
        return await self._request("abort_session", "POST", f"/session/{session_id}/abort")

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        payload: Mapping[str, Any],
    ) -> Any:
        return await self._request(
            "respond_to_permission",
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json_body=dict(payload),
        )

    async def aclose(self) -> None:
        if self._owned is not None:
            await self._owned.aclose()
            self._owned = None


def parse_sse_line(line: str) -> tuple[str, dict[str, Any]] | None:
    """Decode one ``data:`` line into ``(event type, properties)``."""

    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    if not raw:
        return None
    event = json.loads(raw)
    if not isinstance(event, Mapping):
        return None
    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None
    properties = event.get("properties")
    return event_type, dict(properties) if isinstance(properties, Mapping) else {}


@dataclass(slots=True)
class EventStreamPump:
    """Reads the server's event stream and republishes each event on a bus."""

    bus: EventPublisher
    base_url: str = DEFAULT_BASE_URL
    directory: str | None = None
    headers: Mapping[str, str] | None = None
    client: httpx.AsyncClient | None = None
    reconnect_delay_s: float = 1.0
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=None, headers=dict(self.headers or {})) as client:
            yield client

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="opencode-headless:events")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def consume(self) -> int:
        """Read the stream until the server closes it; return events published."""

        published = 0
        url = f"{_normalize_base_url(self.base_url)}/event"
        params = {"directory": self.directory} if self.directory else {}
        async with self._client_context() as client:
            async with client.stream("GET", url, params=params) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_status("event_stream", response)
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        decoded = parse_sse_line(line)
                    except json.JSONDecodeError:
                        logger.warning("event_stream_malformed", extra={"line": line[:200]})
                        continue
                    if decoded is None:
                        continue
                    topic, properties = decoded
                    self.bus.publish(topic, properties)
                    published += 1
        return published

    async def _run(self) -> None:
        while True:
            try:
                await self.consume()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("event_stream_error", extra={"exception": exc})
            await asyncio.sleep(self.reconnect_delay_s)


__all__ = [
    "ApiClient",
    "DEFAULT_BASE_URL",
    "EventPublisher",
    "EventStreamPump",
    "HttpApiClient",
    "parse_sse_line",
]
