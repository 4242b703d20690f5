from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from tabrelay.api.deps import check_media_type, get_registry, session_info
from tabrelay.core.logs import get_logger
from tabrelay.models.messages import (
    ChunkAccepted,
    EventsPage,
    SessionInfo,
    StartSessionRequest,
    TranscriptDocument,
)
from tabrelay.models.session import CaptureTarget
from tabrelay.services.session_store import SessionRegistry
from tabrelay.services.transport import PollingEventChannel

router = APIRouter()
log = get_logger("api.rest")

# Target used by the single-session routes of the first extension build
LEGACY_TARGET = CaptureTarget(kind="tab", id="default")


async def _read_chunk(request: Request) -> bytes:
    check_media_type(request.headers.get("content-type"))
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="empty chunk")
    return payload


@router.post("/sessions", status_code=201, response_model=SessionInfo)
async def start_session(body: StartSessionRequest, registry: SessionRegistry = Depends(get_registry)):
    channel = PollingEventChannel(max_events=registry.settings.MAX_BUFFERED_EVENTS)
    config = body.config.apply(registry.default_config())
    session = await registry.start(body.target, channel, config)
    return session_info(session)


@router.get("/sessions", response_model=List[SessionInfo])
async def list_sessions(registry: SessionRegistry = Depends(get_registry)):
    return [session_info(s) for s in registry.sessions()]


@router.get("/sessions/{session_id}", response_model=SessionInfo)
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return session_info(registry.get(session_id))


@router.post("/sessions/{session_id}/chunks", status_code=202, response_model=ChunkAccepted)
async def submit_chunk(session_id: str, request: Request, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    payload = await _read_chunk(request)
    chunk = session.submit_chunk(payload)
    return ChunkAccepted(
        sessionId=session_id,
        accepted=chunk is not None,
        sequence=chunk.sequence if chunk is not None else None,
    )


@router.post("/sessions/{session_id}/stop", response_model=SessionInfo)
async def stop_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = await registry.stop(session_id)
    return session_info(session)


@router.get("/sessions/{session_id}/events", response_model=EventsPage)
async def poll_events(
        session_id: str,
        after: int = Query(0, ge=0, description="Last cursor the client has seen"),
        registry: SessionRegistry = Depends(get_registry),
):
    session = registry.get(session_id)
    channel = session.channel
    if not isinstance(channel, PollingEventChannel):
        raise HTTPException(status_code=409, detail="session delivers events over its websocket")
    return EventsPage(sessionId=session_id, cursor=channel.cursor, events=channel.fetch(after))


@router.get("/sessions/{session_id}/transcript")
async def get_transcript(
        session_id: str,
        format: Literal["text", "json"] = "json",
        registry: SessionRegistry = Depends(get_registry),
):
    session = registry.get(session_id)
    transcript = session.transcript
    if format == "text":
        return PlainTextResponse(
            transcript.text,
            headers={"Content-Disposition": f'attachment; filename="{session_id}.txt"'},
        )
    return TranscriptDocument(
        sessionId=session_id,
        text=transcript.text,
        finals=transcript.finals,
        interim=transcript.interim,
        status=transcript.status,
    )


# Single-session routes kept for the original extension build

@router.post("/start-stream")
async def legacy_start(registry: SessionRegistry = Depends(get_registry)):
    channel = PollingEventChannel(max_events=registry.settings.MAX_BUFFERED_EVENTS)
    session = await registry.start(LEGACY_TARGET, channel)
    return {"message": "Streaming session started (REST)", "sessionId": session.session_id}


@router.post("/stream-chunk")
async def legacy_chunk(request: Request, registry: SessionRegistry = Depends(get_registry)):
    session = registry.active_for(LEGACY_TARGET)
    if session is None:
        return JSONResponse(status_code=400, content={"error": "Stream not initialized"})
    payload = await _read_chunk(request)
    session.submit_chunk(payload)
    return {"message": "Chunk received"}


@router.post("/stop-stream")
async def legacy_stop(registry: SessionRegistry = Depends(get_registry)):
    session = registry.active_for(LEGACY_TARGET)
    if session is not None:
        await session.stop()
    return {"message": "Streaming session stopped"}
