from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tabrelay.models.session import CaptureTarget, TranscriptEvent, UpstreamConfig


# Client → Server messages

class UpstreamConfigOverrides(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encoding: Optional[str] = None
    sample_rate_hertz: Optional[int] = Field(default=None, gt=0, alias="sampleRate")
    language_code: Optional[str] = Field(default=None, alias="languageCode")
    interim_results: Optional[bool] = Field(default=None, alias="interimResults")

    def apply(self, base: UpstreamConfig) -> UpstreamConfig:
        return base.model_copy(update=self.model_dump(exclude_none=True))


class StartSessionRequest(BaseModel):
    target: CaptureTarget
    config: UpstreamConfigOverrides = Field(default_factory=UpstreamConfigOverrides)


class ClientStartSession(StartSessionRequest):
    type: Literal["start"] = "start"


# Server → Client messages

class SessionStarted(BaseModel):
    type: Literal["session_started"] = "session_started"
    sessionId: str
    state: str
    target: str


class TranscriptMessage(BaseModel):
    type: Literal["transcript"] = "transcript"
    sessionId: str
    text: str
    isFinal: bool
    resultIndex: int = 0

    @classmethod
    def from_event(cls, event: TranscriptEvent) -> "TranscriptMessage":
        return cls(
            sessionId=event.session_id,
            text=event.text,
            isFinal=event.is_final,
            resultIndex=event.result_index,
        )


class StatusMessage(BaseModel):
    type: Literal["status"] = "status"
    sessionId: str
    state: str
    message: str


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str


# REST responses

class SessionInfo(BaseModel):
    sessionId: str
    target: str
    state: str
    status: str
    startedAt: Optional[float] = None
    stoppedAt: Optional[float] = None
    elapsedSec: float = 0.0
    chunksAccepted: int = 0
    chunksForwarded: int = 0
    chunksDropped: int = 0
    error: Optional[str] = None


class ChunkAccepted(BaseModel):
    sessionId: str
    accepted: bool
    sequence: Optional[int] = None


class EventsPage(BaseModel):
    sessionId: str
    cursor: int
    events: List[Dict[str, Any]]


class TranscriptDocument(BaseModel):
    sessionId: str
    text: str
    finals: List[str]
    interim: str
    status: str


_SERVER_MESSAGES = {
    "session_started": SessionStarted,
    "transcript": TranscriptMessage,
    "status": StatusMessage,
    "error": ErrorMessage,
}


def parse_server_message(data: Dict[str, Any]) -> Optional[BaseModel]:
    """Turn a decoded server frame into its model; unknown types yield None."""
    model = _SERVER_MESSAGES.get(data.get("type"))
    if model is None:
        return None
    return model(**data)
