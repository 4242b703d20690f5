from fastapi import HTTPException
from fastapi.requests import HTTPConnection

from tabrelay.models.messages import SessionInfo
from tabrelay.services.relay import RelaySession
from tabrelay.services.session_store import SessionRegistry

ACCEPTED_MEDIA_PREFIXES = ("audio/", "application/octet-stream")


def get_registry(conn: HTTPConnection) -> SessionRegistry:
    registry = getattr(conn.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="relay is not ready")
    return registry


def session_info(session: RelaySession) -> SessionInfo:
    return SessionInfo(
        sessionId=session.session_id,
        target=session.target.key,
        state=session.state.value,
        status=session.status,
        startedAt=session.started_at,
        stoppedAt=session.stopped_at,
        elapsedSec=round(session.elapsed_sec, 3),
        chunksAccepted=session.chunks_accepted,
        chunksForwarded=session.chunks_forwarded,
        chunksDropped=session.chunks_dropped,
        error=session.error.summary() if session.error else None,
    )


def check_media_type(content_type: str | None):
    media_type = (content_type or "application/octet-stream").split(";")[0].strip().lower()
    if not media_type.startswith(ACCEPTED_MEDIA_PREFIXES):
        raise HTTPException(status_code=415, detail=f"unsupported media type {media_type}")
