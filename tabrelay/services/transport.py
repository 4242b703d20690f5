"""
Server-side transport channels.

A relay session pushes its events through exactly one ``EventChannel`` and never needs
to know whether the client is on a persistent socket or polling over HTTP.
"""

from collections import deque
from typing import Any, Deque, Dict, List, Protocol, Tuple

from fastapi import WebSocket
from fastapi.websockets import WebSocketState
from pydantic import BaseModel

from tabrelay.core.errors import TransportError
from tabrelay.core.logs import get_logger
from tabrelay.models.messages import StatusMessage, TranscriptMessage
from tabrelay.models.session import SessionState, TranscriptEvent


class EventChannel(Protocol):
    async def send_event(self, event: TranscriptEvent) -> None:
        ...

    async def send_status(self, session_id: str, state: SessionState, message: str) -> None:
        ...

    async def close(self) -> None:
        ...


class WebSocketEventChannel:
    """Pushes events as JSON text frames on the session's socket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False
        self._log = get_logger("transport.ws")

    @property
    def connected(self) -> bool:
        return (
            not self._closed
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_message(self, message: BaseModel):
        if not self.connected:
            raise TransportError("socket is closed")
        try:
            # Always send text JSON for compatibility
            await self.websocket.send_text(message.model_dump_json())
        except Exception as exc:
            self._closed = True
            raise TransportError(f"socket write failed: {exc}") from exc

    async def send_event(self, event: TranscriptEvent):
        await self.send_message(TranscriptMessage.from_event(event))

    async def send_status(self, session_id: str, state: SessionState, message: str):
        await self.send_message(StatusMessage(sessionId=session_id, state=state.value, message=message))

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close()
            except RuntimeError:
                # Close frame already sent by the peer or the server
                self._log.debug("socket already closed")


class PollingEventChannel:
    """
    Buffers events for clients on the request/response transport.

    Events get a monotonically increasing cursor; clients poll with the last cursor they
    saw. The buffer is bounded, so a client that stops polling loses the oldest events
    instead of growing server memory.
    """

    def __init__(self, max_events: int = 500):
        self._events: Deque[Tuple[int, Dict[str, Any]]] = deque(maxlen=max_events)
        self._cursor = 0
        self.closed = False

    def _push(self, payload: Dict[str, Any]):
        if self.closed:
            raise TransportError("channel is closed")
        self._cursor += 1
        self._events.append((self._cursor, payload))

    async def send_event(self, event: TranscriptEvent):
        self._push(TranscriptMessage.from_event(event).model_dump())

    async def send_status(self, session_id: str, state: SessionState, message: str):
        self._push(StatusMessage(sessionId=session_id, state=state.value, message=message).model_dump())

    async def close(self):
        self.closed = True

    @property
    def cursor(self) -> int:
        return self._cursor

    def fetch(self, after: int = 0) -> List[Dict[str, Any]]:
        return [payload for cursor, payload in self._events if cursor > after]
