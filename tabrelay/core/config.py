from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=7214)
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # "streaming" relays to Google Speech-to-Text, "chunked" transcribes each chunk with Gemini
    TRANSCRIPTION_MODE: Literal["streaming", "chunked"] = Field(default="streaming")

    # Google Cloud Speech-to-Text
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = Field(
        default=None,
        description="Path to the service account JSON used by the speech client",
    )

    # Gemini
    GEMINI_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-2.5-flash")

    # Default upstream recognition config (Chrome MediaRecorder defaults)
    AUDIO_ENCODING: str = Field(default="WEBM_OPUS")
    SAMPLE_RATE_HERTZ: int = Field(default=48000, gt=0)
    LANGUAGE_CODE: str = Field(default="en-US")
    INTERIM_RESULTS: bool = Field(default=True)

    # Session lifecycle
    STOP_GRACE_SEC: float = Field(default=5.0, gt=0)
    SOURCE_READY_TIMEOUT_SEC: float = Field(default=15.0, gt=0)
    MAX_PENDING_CHUNKS: int = Field(default=64, gt=0)
    MAX_BUFFERED_EVENTS: int = Field(default=500, gt=0)
    MAX_RETAINED_SESSIONS: int = Field(default=50, ge=0)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    JSON_LOGS: bool = Field(default=False)


settings = Settings()
