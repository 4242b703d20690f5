"""
Pytest configuration and shared fixtures.

The fakes here stand in for the browser-side capture and the vendor transcription
service so the relay can be exercised without network access.
"""

import asyncio
from typing import List, Optional

import pytest

from tabrelay.core.config import Settings
from tabrelay.core.errors import SourceUnavailableError, TransportError, UpstreamError
from tabrelay.models.session import CaptureTarget, RecognitionResult, SessionState, UpstreamConfig
from tabrelay.services.session_store import SessionRegistry

pytest_plugins = ("pytest_asyncio",)


# Capture source


class FakeSourceHandle:
    def __init__(self, target: CaptureTarget, journal: Optional[List[str]] = None):
        self.target = target
        self.journal = journal if journal is not None else []
        self.release_calls = 0
        self.observed: List[int] = []
        self._ready = asyncio.Event()

    async def wait_ready(self):
        await self._ready.wait()

    def observe(self, chunk):
        self.observed.append(chunk.sequence)
        self._ready.set()

    async def release(self):
        self.release_calls += 1
        self.journal.append("source.release")


class FakeCaptureSource:
    def __init__(self, error: Optional[Exception] = None, journal: Optional[List[str]] = None):
        self.error = error
        self.journal = journal
        self.handles: List[FakeSourceHandle] = []

    async def acquire(self, target: CaptureTarget) -> FakeSourceHandle:
        if self.error is not None:
            raise self.error
        if target.audible is False:
            raise SourceUnavailableError(f"{target.key} is not producing audio")
        handle = FakeSourceHandle(target, journal=self.journal)
        self.handles.append(handle)
        return handle


# Upstream


class FakeUpstreamHandle:
    """
    Scripted upstream. Payloads starting with ``interim:`` or ``final:`` produce a result
    with the rest of the payload as text; ``boom`` makes the write fail. With
    ``hang_on_end`` the result stream never finishes after ``end_stream``.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        close_delay: float = 0.0,
        hang_on_end: bool = False,
        journal: Optional[List[str]] = None,
    ):
        self.config = config
        self.written: List[bytes] = []
        self.end_calls = 0
        self.close_calls = 0
        self.close_delay = close_delay
        self.hang_on_end = hang_on_end
        self.journal = journal if journal is not None else []
        self._results: "asyncio.Queue[Optional[RecognitionResult]]" = asyncio.Queue()
        self._index = 0

    async def wait_ready(self):
        return None

    def push(self, text: str, is_final: bool):
        self._results.put_nowait(RecognitionResult(text=text, is_final=is_final, result_index=self._index))
        if is_final:
            self._index += 1

    def fail(self, message: str = "recognizer crashed"):
        self._results.put_nowait(UpstreamError(message))

    async def write(self, data: bytes):
        if data == b"boom":
            raise UpstreamError("write rejected")
        self.written.append(data)
        if data.startswith(b"interim:"):
            self.push(data[len(b"interim:"):].decode(), is_final=False)
        elif data.startswith(b"final:"):
            self.push(data[len(b"final:"):].decode(), is_final=True)

    async def results(self):
        while True:
            item = await self._results.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def end_stream(self):
        self.end_calls += 1
        self.journal.append("upstream.end_stream")
        if not self.hang_on_end:
            self._results.put_nowait(None)

    async def close(self):
        self.close_calls += 1
        self.journal.append("upstream.close")
        if self.close_delay:
            await asyncio.sleep(self.close_delay)


class FakeUpstreamAdapter:
    name = "fake"

    def __init__(
        self,
        error: Optional[Exception] = None,
        close_delay: float = 0.0,
        open_delay: float = 0.0,
        hang_on_end: bool = False,
        journal: Optional[List[str]] = None,
    ):
        self.error = error
        self.close_delay = close_delay
        self.open_delay = open_delay
        self.hang_on_end = hang_on_end
        self.journal = journal
        self.handles: List[FakeUpstreamHandle] = []
        self.closed = False

    async def open(self, config: UpstreamConfig) -> FakeUpstreamHandle:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.error is not None:
            raise self.error
        handle = FakeUpstreamHandle(
            config,
            close_delay=self.close_delay,
            hang_on_end=self.hang_on_end,
            journal=self.journal,
        )
        self.handles.append(handle)
        return handle

    async def aclose(self):
        self.closed = True


# Channel


class RecordingChannel:
    def __init__(self, fail_sends: bool = False):
        self.events = []
        self.statuses = []
        self.close_calls = 0
        self.fail_sends = fail_sends

    async def send_event(self, event):
        if self.fail_sends:
            raise TransportError("client went away")
        self.events.append(event)

    async def send_status(self, session_id, state, message):
        if self.fail_sends:
            raise TransportError("client went away")
        self.statuses.append((state, message))

    async def close(self):
        self.close_calls += 1


async def wait_for_state(session, state: SessionState, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"session stayed {session.state.value}, expected {state.value}")
        await asyncio.sleep(0.005)


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# Fixtures


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        STOP_GRACE_SEC=0.5,
        SOURCE_READY_TIMEOUT_SEC=0.5,
        MAX_PENDING_CHUNKS=16,
        MAX_RETAINED_SESSIONS=3,
    )


@pytest.fixture
def target() -> CaptureTarget:
    return CaptureTarget(kind="tab", id="42", label="Meeting")


@pytest.fixture
def source() -> FakeCaptureSource:
    return FakeCaptureSource()


@pytest.fixture
def adapter() -> FakeUpstreamAdapter:
    return FakeUpstreamAdapter()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def registry(source, adapter, test_settings) -> SessionRegistry:
    return SessionRegistry(source, adapter, test_settings)
