"""
Relay session: binds one capture source and one upstream transcription handle.

State machine::

    idle -> starting -> streaming -> stopping -> stopped
       \\________\\____________\\__________-> failed

Chunks flow through a bounded queue drained by a single forwarder task, so the upstream
sees them in submission order. A second task pumps upstream results into the transcript
buffer and the client channel. Teardown always runs the same release sequence:

1. stop accepting chunks
2. end the upstream stream and wait for trailing results (bounded by the grace period)
3. release the source
4. close the upstream handle
"""

import asyncio
import time
import uuid
from typing import Optional

from tabrelay.core.errors import (
    ConflictError,
    RelayError,
    SourceUnavailableError,
    TransportError,
    UpstreamError,
)
from tabrelay.core.logs import get_logger
from tabrelay.models.session import (
    CaptureTarget,
    Chunk,
    SessionState,
    TranscriptEvent,
    UpstreamConfig,
)
from tabrelay.services.capture import CaptureSource, SourceHandle
from tabrelay.services.transcript import TranscriptBuffer
from tabrelay.services.transcriber import UpstreamAdapter, UpstreamHandle
from tabrelay.services.transport import EventChannel

_STATUS_TEXT = {
    SessionState.IDLE: "Idle",
    SessionState.STARTING: "Connecting…",
    SessionState.STREAMING: "Recording",
    SessionState.STOPPING: "Stopping…",
    SessionState.STOPPED: "Stopped",
    SessionState.FAILED: "Failed",
}

# Floor for each teardown step once the stop deadline has passed
_MIN_STEP_SEC = 0.05


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:12]}"


class RelaySession:
    def __init__(
        self,
        target: CaptureTarget,
        config: UpstreamConfig,
        channel: EventChannel,
        *,
        session_id: Optional[str] = None,
        stop_grace_sec: float = 5.0,
        source_ready_timeout_sec: float = 15.0,
        max_pending_chunks: int = 64,
    ):
        self.session_id = session_id or new_session_id()
        self.target = target
        self.config = config
        self.channel = channel
        self.transcript = TranscriptBuffer()
        self.state = SessionState.IDLE
        self.error: Optional[RelayError] = None
        self.started_at: Optional[float] = None
        self.stopped_at: Optional[float] = None

        self.stop_grace_sec = stop_grace_sec
        self.source_ready_timeout_sec = source_ready_timeout_sec

        self.chunks_accepted = 0
        self.chunks_forwarded = 0
        self.chunks_dropped = 0
        self._sequence = 0

        self._source: Optional[SourceHandle] = None
        self._upstream: Optional[UpstreamHandle] = None
        self._outbound: "asyncio.Queue[Optional[Chunk]]" = asyncio.Queue(maxsize=max_pending_chunks)
        self._startup_task: Optional[asyncio.Task] = None
        self._forwarder: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._emitting = True
        self._opened = asyncio.Event()
        self._done = asyncio.Event()

        self._log = get_logger("relay", session_id=self.session_id, target=target.key)

    def _transition(self, new_state: SessionState, detail: str = ""):
        old_state = self.state
        self.state = new_state
        status = _STATUS_TEXT[new_state]
        if detail:
            status = f"{status}: {detail}"
        self.transcript.set_status(status)
        self._log.info("session state changed", old=old_state.value, new=new_state.value)

    @property
    def status(self) -> str:
        return self.transcript.status

    @property
    def elapsed_sec(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.stopped_at if self.stopped_at is not None else time.time()
        return max(0.0, end - self.started_at)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    async def wait_closed(self):
        await self._done.wait()

    async def start(self, source: CaptureSource, adapter: UpstreamAdapter) -> str:
        """
        Acquire the source and open the upstream handle.

        Returns as soon as both are acquired; the switch to ``streaming`` happens in the
        background once the source produces data. Raises ``SourceUnavailableError`` or
        ``UpstreamError`` after moving the session to ``failed``, and ``ConflictError``
        when ``stop()`` lands before both are acquired. Anything acquired by then is
        released before raising.
        """
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"session {self.session_id} already started")

        self.started_at = time.time()
        self._transition(SessionState.STARTING)

        try:
            await self._acquire(source, adapter)
        except RelayError:
            if self.state != SessionState.FAILED:
                # stop() won the race and may already have returned
                await self._release()
            raise
        finally:
            self._opened.set()

        self._startup_task = asyncio.create_task(
            self._guard(self._confirm_live()), name=f"{self.session_id}-startup"
        )
        return self.session_id

    async def _acquire(self, source: CaptureSource, adapter: UpstreamAdapter):
        try:
            self._source = await source.acquire(self.target)
        except SourceUnavailableError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            err = SourceUnavailableError(f"could not acquire {self.target.key}: {exc}")
            await self._fail(err)
            raise err from exc
        self._ensure_starting()

        try:
            self._upstream = await adapter.open(self.config)
        except UpstreamError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            err = UpstreamError(f"{adapter.name} could not be opened: {exc}")
            await self._fail(err)
            raise err from exc
        self._ensure_starting()

    def _ensure_starting(self):
        if self.state != SessionState.STARTING:
            raise ConflictError(f"session {self.session_id} was stopped while starting")

    async def _confirm_live(self):
        try:
            await asyncio.wait_for(self._source.wait_ready(), timeout=self.source_ready_timeout_sec)
        except asyncio.TimeoutError:
            raise SourceUnavailableError(
                f"no audio received within {self.source_ready_timeout_sec:g}s"
            ) from None
        try:
            await asyncio.wait_for(self._upstream.wait_ready(), timeout=self.source_ready_timeout_sec)
        except asyncio.TimeoutError:
            raise UpstreamError("transcription service did not become ready") from None

        if self.state != SessionState.STARTING:
            return
        self._transition(SessionState.STREAMING)
        self._forwarder = asyncio.create_task(
            self._guard(self._forward_chunks()), name=f"{self.session_id}-forwarder"
        )
        self._reader = asyncio.create_task(
            self._guard(self._pump_results()), name=f"{self.session_id}-reader"
        )
        await self._notify_status()

    def submit_chunk(self, payload: bytes, captured_at: Optional[float] = None) -> Optional[Chunk]:
        """
        Queue one encoded chunk for the upstream.

        Chunks arriving after stop began, or while the outbound queue is full, are dropped
        and logged. The returned chunk is None in that case.
        """
        if self.state not in (SessionState.STARTING, SessionState.STREAMING):
            self.chunks_dropped += 1
            self._log.debug("chunk dropped, session not accepting", state=self.state.value, size=len(payload))
            return None

        chunk = Chunk(
            session_id=self.session_id,
            sequence=self._sequence,
            payload=payload,
            captured_at=captured_at if captured_at is not None else time.time(),
        )
        self._sequence += 1

        try:
            self._outbound.put_nowait(chunk)
        except asyncio.QueueFull:
            self.chunks_dropped += 1
            self._log.warning("chunk dropped, upstream is behind", sequence=chunk.sequence)
            return None

        self.chunks_accepted += 1
        if self._source is not None:
            self._source.observe(chunk)
        return chunk

    async def _forward_chunks(self):
        while True:
            chunk = await self._outbound.get()
            if chunk is None:
                break
            await self._upstream.write(chunk.payload)
            self.chunks_forwarded += 1
        await self._upstream.end_stream()

    async def _pump_results(self):
        async for result in self._upstream.results():
            await self._emit(
                TranscriptEvent(
                    session_id=self.session_id,
                    text=result.text,
                    is_final=result.is_final,
                    result_index=result.result_index,
                )
            )

    async def _emit(self, event: TranscriptEvent):
        if not self._emitting:
            self._log.debug("event dropped after stop", is_final=event.is_final)
            return
        self.transcript.apply(event)
        await self.channel.send_event(event)

    async def _notify_status(self):
        detail = self.error.summary() if self.error else ""
        try:
            await self.channel.send_status(self.session_id, self.state, self.status if not detail else detail)
        except RelayError as exc:
            self._log.debug("status not delivered", error=str(exc))

    async def _guard(self, coro):
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except RelayError as exc:
            await self._fail(exc)
        except Exception as exc:
            self._log.exception("unexpected relay task failure")
            await self._fail(UpstreamError(str(exc)))

    async def stop(self) -> SessionState:
        """Stop the session. Safe to call repeatedly or concurrently."""
        if self.state == SessionState.IDLE:
            self._transition(SessionState.STOPPED)
            self.stopped_at = time.time()
            self._done.set()
            return self.state

        if self.state != SessionState.STARTING and self.state != SessionState.STREAMING:
            await self._done.wait()
            return self.state

        # (1) no new chunks from here on
        self._transition(SessionState.STOPPING)
        deadline = asyncio.get_running_loop().time() + self.stop_grace_sec
        try:
            if not self._opened.is_set():
                # start() releases what it acquires late if this wait runs out
                await asyncio.wait_for(self._opened.wait(), timeout=self._remaining(deadline))
            # (2) end of stream upstream, flush trailing results
            await asyncio.wait_for(self._drain(), timeout=self._remaining(deadline))
        except asyncio.TimeoutError:
            self._log.warning("upstream flush timed out", grace_sec=self.stop_grace_sec)
        except Exception:
            self._log.warning("upstream flush failed", exc_info=True)

        # (3) and (4)
        await self._release(deadline)
        self.stopped_at = time.time()
        if self.state == SessionState.STOPPING:
            self._transition(SessionState.STOPPED)
        await self._notify_status()
        self._done.set()
        return self.state

    async def _drain(self):
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            await asyncio.gather(self._startup_task, return_exceptions=True)

        if self._forwarder is not None:
            if not self._forwarder.done():
                await self._outbound.put(None)
            await self._forwarder
        elif self._upstream is not None:
            await self._upstream.end_stream()

        if self._reader is not None:
            await self._reader

    async def _fail(self, exc: RelayError):
        if self.state.is_terminal or self.state == SessionState.STOPPING:
            # stop() owns the cleanup already in progress
            self._log.warning("error during teardown", error=exc.summary())
            return

        self.error = exc
        self._log.error("session failed", error=exc.summary())
        self._transition(SessionState.FAILED, exc.message)
        if isinstance(exc, TransportError):
            await self._close_channel()
        else:
            await self._notify_status()
        await self._release()
        self.stopped_at = time.time()
        self._done.set()

    async def _close_channel(self):
        try:
            await self.channel.close()
        except Exception:
            self._log.warning("channel close failed", exc_info=True)

    def _remaining(self, deadline: float) -> float:
        return max(deadline - asyncio.get_running_loop().time(), _MIN_STEP_SEC)

    async def _release(self, deadline: Optional[float] = None):
        """
        Best-effort release of everything the session holds. Never raises.

        Source release and upstream close share ``deadline``, which defaults to one grace
        period from now.
        """
        if deadline is None:
            deadline = asyncio.get_running_loop().time() + self.stop_grace_sec
        self._emitting = False

        current = asyncio.current_task()
        tasks = [
            t for t in (self._startup_task, self._forwarder, self._reader)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # Queued chunks that never reached the upstream count as dropped, not accepted
        while not self._outbound.empty():
            if self._outbound.get_nowait() is not None:
                self.chunks_accepted -= 1
                self.chunks_dropped += 1

        source, self._source = self._source, None
        if source is not None:
            try:
                await asyncio.wait_for(source.release(), timeout=self._remaining(deadline))
            except Exception:
                self._log.warning("source release failed", exc_info=True)

        upstream, self._upstream = self._upstream, None
        if upstream is not None:
            try:
                await asyncio.wait_for(upstream.close(), timeout=self._remaining(deadline))
            except Exception:
                self._log.warning("upstream close failed", exc_info=True)
