import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from tabrelay.api.deps import get_registry
from tabrelay.core.errors import RelayError, TransportError
from tabrelay.core.logs import get_logger
from tabrelay.models.messages import (
    ClientStartSession,
    ErrorMessage,
    SessionStarted,
    UpstreamConfigOverrides,
)
from tabrelay.models.session import CaptureTarget
from tabrelay.services.relay import RelaySession
from tabrelay.services.session_store import SessionRegistry
from tabrelay.services.transport import WebSocketEventChannel

router = APIRouter()
log = get_logger("api.ws")


@router.websocket("/ws/transcribe")
async def ws_transcribe(
        websocket: WebSocket,
        target: Optional[str] = Query(None, description="Capture target key, e.g. tab:42; starts the session on connect"),
        language: Optional[str] = Query(None),
        encoding: Optional[str] = Query(None),
        sampleRate: Optional[int] = Query(None),
        interim: Optional[bool] = Query(None),
        registry: SessionRegistry = Depends(get_registry),
):
    await websocket.accept()
    channel = WebSocketEventChannel(websocket)
    session: Optional[RelaySession] = None

    try:
        if target is not None:
            try:
                start = ClientStartSession(
                    target=CaptureTarget.parse_key(target),
                    config=UpstreamConfigOverrides(
                        encoding=encoding,
                        sampleRate=sampleRate,
                        languageCode=language,
                        interimResults=interim,
                    ),
                )
            except ValidationError as e:
                await _send_error(channel, "bad_request", str(e))
            else:
                session = await _start(channel, registry, start)

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            # Binary frames carry audio
            if message.get("bytes") is not None:
                if session is None:
                    await _send_error(channel, "no_session", "send a start message before audio")
                    continue
                session.submit_chunk(message["bytes"])
                continue

            try:
                data = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                await _send_error(channel, "bad_request", "text frames must be JSON")
                continue

            msg_type = data.get("type") if isinstance(data, dict) else None

            if msg_type == "start":
                if session is not None and not session.state.is_terminal:
                    await _send_error(channel, "conflict", f"session {session.session_id} is still {session.state.value}")
                    continue
                try:
                    start = ClientStartSession(**data)
                except ValidationError as e:
                    await _send_error(channel, "bad_request", str(e))
                    continue
                session = await _start(channel, registry, start) or session

            elif msg_type == "stop":
                if session is not None:
                    await session.stop()

            else:
                await _send_error(channel, "bad_request", f"Unknown message type: {msg_type}")

    except WebSocketDisconnect:
        # Client went away; the finally block stops the session
        pass
    except TransportError as e:
        log.info("websocket transport closed", error=str(e))
    finally:
        # Closing the socket is an implicit stop
        if session is not None:
            await session.stop()
        await channel.close()


async def _start(channel: WebSocketEventChannel, registry: SessionRegistry, start: ClientStartSession) -> Optional[RelaySession]:
    config = start.config.apply(registry.default_config())
    try:
        session = await registry.start(start.target, channel, config)
    except RelayError as e:
        await _send_error(channel, e.code, e.message)
        return None
    await _send(channel, SessionStarted(
        sessionId=session.session_id,
        state=session.state.value,
        target=session.target.key,
    ))
    return session


async def _send_error(channel: WebSocketEventChannel, code: str, message: str):
    await _send(channel, ErrorMessage(code=code, message=message))


async def _send(channel: WebSocketEventChannel, payload: BaseModel):
    await channel.send_message(payload)
