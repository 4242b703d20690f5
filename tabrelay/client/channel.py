"""
Client-side transport channels.

Both variants expose the same surface: ``open`` a session, ``send`` chunks, register
``on_event`` callbacks, ``close``. Callers never need to know which transport is in use.
"""

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

import httpx
import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed

from tabrelay.core.errors import RelayError, TransportError, error_from_code
from tabrelay.core.logs import get_logger
from tabrelay.models.messages import (
    ErrorMessage,
    SessionStarted,
    StatusMessage,
    UpstreamConfigOverrides,
    parse_server_message,
)
from tabrelay.models.session import CaptureTarget

EventCallback = Callable[[BaseModel], Union[None, Awaitable[None]]]

_TERMINAL_STATES = ("stopped", "failed")


class RelayChannel(Protocol):
    session_id: Optional[str]

    async def open(self, target: CaptureTarget, config: Optional[UpstreamConfigOverrides] = None) -> str:
        ...

    async def send(self, chunk: bytes) -> None:
        ...

    def on_event(self, callback: EventCallback) -> None:
        ...

    async def close(self) -> None:
        ...


class _Dispatcher:
    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self.finished = asyncio.Event()

    def on_event(self, callback: EventCallback):
        self._callbacks.append(callback)

    async def dispatch(self, data: Any):
        message = parse_server_message(data) if isinstance(data, dict) else None
        if message is None:
            return
        if isinstance(message, StatusMessage) and message.state in _TERMINAL_STATES:
            self.finished.set()
        for callback in self._callbacks:
            result = callback(message)
            if inspect.isawaitable(result):
                await result


def _config_payload(config: Optional[UpstreamConfigOverrides]) -> dict:
    if config is None:
        return {}
    return config.model_dump(by_alias=True, exclude_none=True)


class WebSocketRelayChannel(_Dispatcher):
    """Persistent socket: audio as binary frames, events as JSON text frames."""

    def __init__(self, url: str, close_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.close_timeout = close_timeout
        self.session_id: Optional[str] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._log = get_logger("client.ws")

    async def open(self, target: CaptureTarget, config: Optional[UpstreamConfigOverrides] = None) -> str:
        try:
            self._ws = await websockets.connect(self.url, ping_interval=20, max_size=32 * 1024 * 1024)
            await self._ws.send(json.dumps({
                "type": "start",
                "target": target.model_dump(exclude_none=True),
                "config": _config_payload(config),
            }))
            # The first answer is either session_started or an error
            reply = parse_server_message(json.loads(await self._ws.recv()))
        except (OSError, ConnectionClosed) as exc:
            raise TransportError(f"could not reach {self.url}: {exc}") from exc

        if isinstance(reply, ErrorMessage):
            await self._ws.close()
            raise error_from_code(reply.code, reply.message)
        if not isinstance(reply, SessionStarted):
            await self._ws.close()
            raise TransportError(f"unexpected reply to start: {reply!r}")

        self.session_id = reply.sessionId
        self._reader = asyncio.create_task(self._read_loop())
        return self.session_id

    async def _read_loop(self):
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    continue
                await self.dispatch(json.loads(frame))
        except ConnectionClosed:
            self._log.debug("socket closed by server")
        finally:
            self.finished.set()

    async def send(self, chunk: bytes):
        if self._ws is None:
            raise TransportError("channel is not open")
        try:
            await self._ws.send(chunk)
        except ConnectionClosed as exc:
            raise TransportError(f"socket closed: {exc}") from exc

    async def close(self):
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps({"type": "stop"}))
            await asyncio.wait_for(self.finished.wait(), timeout=self.close_timeout)
        except (ConnectionClosed, asyncio.TimeoutError):
            self._log.debug("closing without a final status")
        finally:
            await self._ws.close()
            if self._reader is not None:
                await asyncio.gather(self._reader, return_exceptions=True)
            self._ws = None


class HttpRelayChannel(_Dispatcher):
    """Request/response: one POST per chunk, events fetched by polling."""

    def __init__(
        self,
        base_url: str,
        poll_interval: float = 0.25,
        client: Optional[httpx.AsyncClient] = None,
        content_type: str = "application/octet-stream",
    ):
        super().__init__()
        self.poll_interval = poll_interval
        self.content_type = content_type
        self.session_id: Optional[str] = None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)
        self._cursor = 0
        self._poller: Optional[asyncio.Task] = None
        self._poll_lock = asyncio.Lock()
        self._log = get_logger("client.http")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, dict) and "code" in body:
                raise error_from_code(body["code"], body.get("message", ""))
            raise TransportError(f"{method} {url} returned {response.status_code}")
        return response

    async def open(self, target: CaptureTarget, config: Optional[UpstreamConfigOverrides] = None) -> str:
        response = await self._request("POST", "/sessions", json={
            "target": target.model_dump(exclude_none=True),
            "config": _config_payload(config),
        })
        self.session_id = response.json()["sessionId"]
        self._poller = asyncio.create_task(self._poll_loop())
        return self.session_id

    async def poll_once(self):
        async with self._poll_lock:
            response = await self._request(
                "GET", f"/sessions/{self.session_id}/events", params={"after": self._cursor}
            )
            page = response.json()
            self._cursor = page["cursor"]
            for event in page["events"]:
                await self.dispatch(event)

    async def _poll_loop(self):
        while not self.finished.is_set():
            try:
                await self.poll_once()
            except RelayError as exc:
                self._log.warning("event poll failed", error=str(exc))
            await asyncio.sleep(self.poll_interval)

    async def send(self, chunk: bytes):
        if self.session_id is None:
            raise TransportError("channel is not open")
        await self._request(
            "POST",
            f"/sessions/{self.session_id}/chunks",
            content=chunk,
            headers={"Content-Type": self.content_type},
        )

    async def close(self):
        try:
            if self.session_id is not None:
                await self._request("POST", f"/sessions/{self.session_id}/stop")
                # Pick up the trailing results and the final status
                await self.poll_once()
        finally:
            self.finished.set()
            if self._poller is not None:
                self._poller.cancel()
                await asyncio.gather(self._poller, return_exceptions=True)
            if self._owns_client:
                await self._client.aclose()
