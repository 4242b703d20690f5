import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SessionState.STARTING, SessionState.STREAMING, SessionState.STOPPING)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


class CaptureTarget(BaseModel):
    """Which tab or device the browser is capturing."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["tab", "microphone", "device"] = "tab"
    id: str
    label: Optional[str] = None
    # Reported by the extension from chrome.tabs; None when unknown
    audible: Optional[bool] = None

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def parse_key(cls, key: str) -> "CaptureTarget":
        kind, sep, ident = key.partition(":")
        if not sep:
            return cls(kind="tab", id=key)
        return cls(kind=kind, id=ident)


class UpstreamConfig(BaseModel):
    """Recognition settings passed to the upstream adapter when a session opens."""

    model_config = ConfigDict(populate_by_name=True)

    encoding: str = "WEBM_OPUS"
    sample_rate_hertz: int = Field(default=48000, gt=0, alias="sampleRate")
    language_code: str = Field(default="en-US", alias="languageCode")
    interim_results: bool = Field(default=True, alias="interimResults")


@dataclass(frozen=True)
class Chunk:
    session_id: str
    sequence: int
    payload: bytes
    captured_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecognitionResult:
    """One result as delivered by an upstream adapter."""

    text: str
    is_final: bool
    result_index: int = 0


@dataclass(frozen=True)
class TranscriptEvent:
    session_id: str
    text: str
    is_final: bool
    result_index: int = 0
