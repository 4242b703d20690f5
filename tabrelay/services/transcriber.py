"""
Upstream transcription adapters.

Two operating modes are supported and chosen by ``TRANSCRIPTION_MODE``:

* ``streaming``: one Google Cloud Speech-to-Text streaming RPC per session. Interim and
  final results flow back as the recognizer produces them.
* ``chunked``: every chunk is sent to Gemini on its own and comes back as one final result.
  There is no continuity across chunks, so the transcript is a list of independent pieces
  rather than a running stream.
"""

import asyncio
import io
from typing import AsyncIterator, Optional, Protocol

import numpy as np
import soundfile as sf
from google import genai
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import speech
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from tabrelay.core.config import Settings
from tabrelay.core.errors import UpstreamError
from tabrelay.core.logs import get_logger
from tabrelay.models.session import RecognitionResult, UpstreamConfig

TRANSCRIBE_PROMPT = (
    "Transcribe the speech in this audio clip verbatim. "
    "Return only the transcript text, or an empty response if nobody is speaking."
)

_MIME_TYPES = {
    "WEBM_OPUS": "audio/webm",
    "OGG_OPUS": "audio/ogg",
    "MP3": "audio/mp3",
    "FLAC": "audio/flac",
    "LINEAR16": "audio/wav",
}


class UpstreamHandle(Protocol):
    async def wait_ready(self) -> None:
        """Return once the vendor handshake is complete."""
        ...

    async def write(self, data: bytes) -> None:
        ...

    def results(self) -> AsyncIterator[RecognitionResult]:
        """Results in delivery order. The iterator ends after end_stream() once everything is flushed."""
        ...

    async def end_stream(self) -> None:
        """Signal that no more audio will be written."""
        ...

    async def close(self) -> None:
        ...


class UpstreamAdapter(Protocol):
    name: str

    async def open(self, config: UpstreamConfig) -> UpstreamHandle:
        ...

    async def aclose(self) -> None:
        ...


class GoogleStreamingHandle:
    def __init__(self, client: speech.SpeechAsyncClient, config: UpstreamConfig, max_pending: int = 64):
        self._client = client
        self._config = config
        self._requests: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=max_pending)
        self._stream = None
        self._ended = False
        self._closed = False
        self._finals = 0
        self._log = get_logger("upstream.google")

    def _streaming_config(self) -> speech.StreamingRecognitionConfig:
        try:
            encoding = speech.RecognitionConfig.AudioEncoding[self._config.encoding]
        except KeyError as exc:
            raise UpstreamError(f"unsupported audio encoding {self._config.encoding!r}") from exc
        return speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=encoding,
                sample_rate_hertz=self._config.sample_rate_hertz,
                language_code=self._config.language_code,
            ),
            interim_results=self._config.interim_results,
        )

    async def _request_stream(self, streaming_config: speech.StreamingRecognitionConfig):
        # The first request carries only the config, every following one only audio
        yield speech.StreamingRecognizeRequest(streaming_config=streaming_config)
        while True:
            data = await self._requests.get()
            if data is None:
                return
            yield speech.StreamingRecognizeRequest(audio_content=data)

    async def start(self):
        streaming_config = self._streaming_config()
        try:
            self._stream = await self._client.streaming_recognize(
                requests=self._request_stream(streaming_config)
            )
        except google_exceptions.GoogleAPIError as exc:
            raise UpstreamError(f"could not open recognize stream: {exc}") from exc
        self._log.debug("recognize stream opened", encoding=self._config.encoding,
                        sample_rate=self._config.sample_rate_hertz)

    async def wait_ready(self):
        if self._stream is None:
            raise UpstreamError("recognize stream was never opened")

    async def write(self, data: bytes):
        if self._ended:
            raise UpstreamError("recognize stream already ended")
        await self._requests.put(data)

    async def results(self) -> AsyncIterator[RecognitionResult]:
        if self._stream is None:
            return
        try:
            async for response in self._stream:
                if response.error and response.error.code:
                    raise UpstreamError(response.error.message or "recognizer returned an error")
                if not response.results:
                    continue
                # The first result is the most stable one
                result = response.results[0]
                if not result.alternatives:
                    continue
                transcript = result.alternatives[0].transcript
                if not transcript:
                    continue
                yield RecognitionResult(text=transcript, is_final=result.is_final, result_index=self._finals)
                if result.is_final:
                    self._finals += 1
        except google_exceptions.GoogleAPIError as exc:
            raise UpstreamError(str(exc)) from exc

    async def end_stream(self):
        if not self._ended:
            self._ended = True
            await self._requests.put(None)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._ended = True
        # Pending audio is discarded so the sentinel always fits
        dropped = 0
        while not self._requests.empty():
            if self._requests.get_nowait() is not None:
                dropped += 1
        self._requests.put_nowait(None)
        if dropped:
            self._log.debug("pending audio discarded on close", dropped=dropped)
        if self._stream is not None and hasattr(self._stream, "cancel"):
            self._stream.cancel()


class GoogleStreamingAdapter:
    """Google Cloud Speech-to-Text streaming recognition, one RPC per session."""

    name = "google-speech"

    def __init__(
        self,
        credentials_file: Optional[str] = None,
        client: Optional[speech.SpeechAsyncClient] = None,
        max_pending: int = 64,
    ):
        self._credentials_file = credentials_file
        self._client = client
        self._max_pending = max_pending

    def _get_client(self) -> speech.SpeechAsyncClient:
        if self._client is None:
            if self._credentials_file:
                self._client = speech.SpeechAsyncClient.from_service_account_file(self._credentials_file)
            else:
                # Application default credentials
                self._client = speech.SpeechAsyncClient()
        return self._client

    async def open(self, config: UpstreamConfig) -> GoogleStreamingHandle:
        try:
            client = self._get_client()
        except (auth_exceptions.GoogleAuthError, OSError, ValueError) as exc:
            raise UpstreamError(f"speech client unavailable: {exc}") from exc
        handle = GoogleStreamingHandle(client, config, max_pending=self._max_pending)
        await handle.start()
        return handle

    async def aclose(self):
        if self._client is not None:
            await self._client.transport.close()
            self._client = None


class GeminiChunkHandle:
    def __init__(self, client: genai.Client, model: str, config: UpstreamConfig, max_pending: int = 8):
        self._client = client
        self._model = model
        self._config = config
        self._pending: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=max_pending)
        self._ended = False
        self._closed = False
        self._log = get_logger("upstream.gemini", model=model)

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES.get(self._config.encoding, "application/octet-stream")

    def _as_upload(self, data: bytes) -> bytes:
        if self._config.encoding != "LINEAR16":
            return data
        # Raw PCM has no header, wrap it so the model knows the sample rate
        buf = io.BytesIO()
        samples = np.frombuffer(data, dtype=np.int16)
        sf.write(buf, samples, self._config.sample_rate_hertz, format="WAV", subtype="PCM_16")
        return buf.getvalue()

    async def wait_ready(self):
        return None

    async def write(self, data: bytes):
        if self._ended:
            raise UpstreamError("chunk stream already ended")
        await self._pending.put(data)

    async def _transcribe(self, data: bytes) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=[
                    TRANSCRIBE_PROMPT,
                    genai_types.Part.from_bytes(data=self._as_upload(data), mime_type=self.mime_type),
                ],
            )
        except genai_errors.APIError as exc:
            raise UpstreamError(f"gemini transcription failed: {exc}") from exc
        return (response.text or "").strip()

    async def results(self) -> AsyncIterator[RecognitionResult]:
        index = 0
        while True:
            data = await self._pending.get()
            if data is None:
                return
            text = await self._transcribe(data)
            if not text:
                continue
            yield RecognitionResult(text=text, is_final=True, result_index=index)
            index += 1

    async def end_stream(self):
        if not self._ended:
            self._ended = True
            await self._pending.put(None)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._ended = True
        # Unblock a reader still waiting for audio
        try:
            self._pending.put_nowait(None)
        except asyncio.QueueFull:
            self._log.debug("pending chunks discarded on close", pending=self._pending.qsize())


class GeminiChunkAdapter:
    """Transcribes each chunk independently with Gemini."""

    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash",
                 client: Optional[genai.Client] = None):
        self._api_key = api_key
        self._model = model
        self._client = client

    async def open(self, config: UpstreamConfig) -> GeminiChunkHandle:
        if self._client is None:
            try:
                self._client = genai.Client(api_key=self._api_key)
            except ValueError as exc:
                raise UpstreamError(f"gemini client unavailable: {exc}") from exc
        return GeminiChunkHandle(self._client, self._model, config)

    async def aclose(self):
        self._client = None


def build_adapter(settings: Settings) -> UpstreamAdapter:
    if settings.TRANSCRIPTION_MODE == "chunked":
        return GeminiChunkAdapter(api_key=settings.GEMINI_API_KEY, model=settings.GEMINI_MODEL)
    return GoogleStreamingAdapter(
        credentials_file=settings.GOOGLE_APPLICATION_CREDENTIALS,
        max_pending=settings.MAX_PENDING_CHUNKS,
    )
