"""Tests for the upstream adapters with the vendor clients mocked out."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as google_exceptions
from google.cloud import speech
from google.genai import errors as genai_errors

from tabrelay.core.config import Settings
from tabrelay.core.errors import UpstreamError
from tabrelay.models.session import RecognitionResult, UpstreamConfig
from tabrelay.services.transcriber import (
    GeminiChunkAdapter,
    GoogleStreamingAdapter,
    build_adapter,
)

# Helpers


class FakeRecognizeStream:
    def __init__(self, responses, error=None):
        self.responses = responses
        self.error = error
        self.cancelled = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for response in self.responses:
            yield response
        if self.error is not None:
            raise self.error

    def cancel(self):
        self.cancelled = True


def response(text, is_final):
    return speech.StreamingRecognizeResponse(
        results=[
            speech.StreamingRecognitionResult(
                alternatives=[speech.SpeechRecognitionAlternative(transcript=text)],
                is_final=is_final,
            )
        ]
    )


def speech_client(stream):
    client = MagicMock()
    client.streaming_recognize = AsyncMock(return_value=stream)
    client.transport.close = AsyncMock()
    return client


async def collect(handle):
    return [r async for r in handle.results()]


# Google streaming


class TestGoogleStreamingAdapter:
    async def test_results_map_interim_and_final(self):
        stream = FakeRecognizeStream([
            response("hello", False),
            speech.StreamingRecognizeResponse(),
            response("hello world", True),
            response("again", True),
        ])
        adapter = GoogleStreamingAdapter(client=speech_client(stream))

        handle = await adapter.open(UpstreamConfig())
        await handle.wait_ready()
        results = await collect(handle)

        assert results == [
            RecognitionResult(text="hello", is_final=False, result_index=0),
            RecognitionResult(text="hello world", is_final=True, result_index=0),
            RecognitionResult(text="again", is_final=True, result_index=1),
        ]

    async def test_config_request_comes_first(self):
        client = speech_client(FakeRecognizeStream([]))
        adapter = GoogleStreamingAdapter(client=client)
        config = UpstreamConfig(encoding="LINEAR16", sampleRate=16000, languageCode="pl-PL", interimResults=False)

        handle = await adapter.open(config)
        await handle.write(b"\x00\x01")
        await handle.write(b"\x02\x03")
        await handle.end_stream()

        requests = client.streaming_recognize.call_args.kwargs["requests"]
        sent = [r async for r in requests]

        streaming_config = sent[0].streaming_config
        assert streaming_config.config.encoding == speech.RecognitionConfig.AudioEncoding.LINEAR16
        assert streaming_config.config.sample_rate_hertz == 16000
        assert streaming_config.config.language_code == "pl-PL"
        assert streaming_config.interim_results is False
        assert [r.audio_content for r in sent[1:]] == [b"\x00\x01", b"\x02\x03"]

    async def test_unsupported_encoding(self):
        adapter = GoogleStreamingAdapter(client=speech_client(FakeRecognizeStream([])))

        with pytest.raises(UpstreamError, match="unsupported audio encoding"):
            await adapter.open(UpstreamConfig(encoding="NOT_A_CODEC"))

    async def test_open_failure_is_upstream_error(self):
        client = speech_client(None)
        client.streaming_recognize.side_effect = google_exceptions.PermissionDenied("no access")
        adapter = GoogleStreamingAdapter(client=client)

        with pytest.raises(UpstreamError, match="no access"):
            await adapter.open(UpstreamConfig())

    async def test_mid_stream_error_is_upstream_error(self):
        stream = FakeRecognizeStream(
            [response("partial", False)],
            error=google_exceptions.ServiceUnavailable("stream reset"),
        )
        handle = await GoogleStreamingAdapter(client=speech_client(stream)).open(UpstreamConfig())

        seen = []
        with pytest.raises(UpstreamError, match="stream reset"):
            async for result in handle.results():
                seen.append(result.text)
        assert seen == ["partial"]

    async def test_write_after_end_is_rejected(self):
        handle = await GoogleStreamingAdapter(client=speech_client(FakeRecognizeStream([]))).open(UpstreamConfig())
        await handle.end_stream()

        with pytest.raises(UpstreamError):
            await handle.write(b"late")

    async def test_request_queue_is_bounded(self):
        # FakeRecognizeStream never pulls from the request iterator
        adapter = GoogleStreamingAdapter(client=speech_client(FakeRecognizeStream([])), max_pending=4)
        handle = await adapter.open(UpstreamConfig())

        for _ in range(4):
            await asyncio.wait_for(handle.write(b"x" * 1000), timeout=0.5)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(handle.write(b"x" * 1000), timeout=0.05)

        # Closing a full queue must not block
        await asyncio.wait_for(handle.close(), timeout=0.5)

    async def test_close_cancels_stream_once(self):
        stream = FakeRecognizeStream([])
        handle = await GoogleStreamingAdapter(client=speech_client(stream)).open(UpstreamConfig())

        await handle.close()
        await handle.close()

        assert stream.cancelled

    async def test_aclose_closes_transport(self):
        client = speech_client(FakeRecognizeStream([]))
        adapter = GoogleStreamingAdapter(client=client)

        await adapter.aclose()

        client.transport.close.assert_awaited_once()


# Gemini per-chunk


def gemini_client(*texts):
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(
        side_effect=[SimpleNamespace(text=t) for t in texts]
    )
    return client


class TestGeminiChunkAdapter:
    async def test_each_chunk_is_one_final_result(self):
        client = gemini_client(" first part ", "", "second part")
        handle = await GeminiChunkAdapter(client=client, model="gemini-test").open(UpstreamConfig())

        for payload in (b"a", b"b", b"c"):
            await handle.write(payload)
        await handle.end_stream()
        results = await collect(handle)

        assert results == [
            RecognitionResult(text="first part", is_final=True, result_index=0),
            RecognitionResult(text="second part", is_final=True, result_index=1),
        ]
        kwargs = client.aio.models.generate_content.call_args_list[0].kwargs
        assert kwargs["model"] == "gemini-test"
        part = kwargs["contents"][1]
        assert part.inline_data.mime_type == "audio/webm"
        assert part.inline_data.data == b"a"

    async def test_linear16_is_wrapped_as_wav(self):
        client = gemini_client("hi")
        config = UpstreamConfig(encoding="LINEAR16", sampleRate=16000)
        handle = await GeminiChunkAdapter(client=client).open(config)

        await handle.write(b"\x00\x00" * 160)
        await handle.end_stream()
        await collect(handle)

        part = client.aio.models.generate_content.call_args.kwargs["contents"][1]
        assert part.inline_data.mime_type == "audio/wav"
        assert part.inline_data.data[:4] == b"RIFF"

    async def test_api_error_is_upstream_error(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(
            side_effect=genai_errors.APIError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}})
        )
        handle = await GeminiChunkAdapter(client=client).open(UpstreamConfig())
        await handle.write(b"a")

        with pytest.raises(UpstreamError, match="gemini transcription failed"):
            await collect(handle)

    async def test_close_unblocks_reader(self):
        handle = await GeminiChunkAdapter(client=gemini_client()).open(UpstreamConfig())

        await handle.close()

        assert await collect(handle) == []


def test_build_adapter_follows_mode():
    streaming = build_adapter(Settings(_env_file=None, TRANSCRIPTION_MODE="streaming"))
    chunked = build_adapter(Settings(_env_file=None, TRANSCRIPTION_MODE="chunked", GEMINI_MODEL="gemini-x"))

    assert isinstance(streaming, GoogleStreamingAdapter)
    assert isinstance(chunked, GeminiChunkAdapter)
    assert chunked.name == "gemini"
