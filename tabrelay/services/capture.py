"""
Capture source seen from the server.

The browser extension owns the real capture (chrome.tabCapture + MediaRecorder), so the
server-side source is a handle over the stream the client declared when it started the
session. The handle counts as producing data once the first chunk has been observed.
"""

import asyncio
from typing import Protocol

from tabrelay.core.errors import SourceUnavailableError
from tabrelay.core.logs import get_logger
from tabrelay.models.session import CaptureTarget, Chunk


class SourceHandle(Protocol):
    async def wait_ready(self) -> None:
        """Return once the source is confirmed producing audio."""
        ...

    def observe(self, chunk: Chunk) -> None:
        """Called for every chunk the session accepts from this source."""
        ...

    async def release(self) -> None:
        ...


class CaptureSource(Protocol):
    async def acquire(self, target: CaptureTarget) -> SourceHandle:
        """Acquire the capture target. Raises SourceUnavailableError when it cannot produce audio."""
        ...


class ClientSourceHandle:
    def __init__(self, target: CaptureTarget):
        self.target = target
        self.released = False
        self._ready = asyncio.Event()
        self._log = get_logger("capture", target=target.key)

    async def wait_ready(self):
        await self._ready.wait()

    def observe(self, chunk: Chunk):
        if not self._ready.is_set():
            self._log.debug("first chunk received", sequence=chunk.sequence, size=len(chunk.payload))
            self._ready.set()

    async def release(self):
        if self.released:
            return
        self.released = True
        self._log.debug("source released")


class ClientCaptureSource:
    """Acquires the stream a client declared, refusing targets reported as silent."""

    async def acquire(self, target: CaptureTarget) -> ClientSourceHandle:
        if target.audible is False:
            raise SourceUnavailableError(f"{target.key} is not producing audio")
        return ClientSourceHandle(target)
