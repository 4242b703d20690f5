import asyncio
from collections import OrderedDict
from typing import Dict, List, Optional

from tabrelay.core.config import Settings
from tabrelay.core.errors import ConflictError, SessionNotFoundError
from tabrelay.core.logs import get_logger
from tabrelay.models.session import CaptureTarget, UpstreamConfig
from tabrelay.services.capture import CaptureSource
from tabrelay.services.relay import RelaySession
from tabrelay.services.transcriber import UpstreamAdapter
from tabrelay.services.transport import EventChannel

log = get_logger("registry")


class SessionRegistry:
    """
    In-memory registry of relay sessions, keyed by session id and by capture target.

    A target is owned by at most one active session. Finished sessions are kept around
    (up to ``max_retained``) so clients can still read their transcript and status.
    """

    def __init__(
        self,
        source: CaptureSource,
        adapter: UpstreamAdapter,
        settings: Settings,
    ):
        self.source = source
        self.adapter = adapter
        self.settings = settings
        self._sessions: "OrderedDict[str, RelaySession]" = OrderedDict()
        self._by_target: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def default_config(self) -> UpstreamConfig:
        return UpstreamConfig(
            encoding=self.settings.AUDIO_ENCODING,
            sample_rate_hertz=self.settings.SAMPLE_RATE_HERTZ,
            language_code=self.settings.LANGUAGE_CODE,
            interim_results=self.settings.INTERIM_RESULTS,
        )

    async def start(
        self,
        target: CaptureTarget,
        channel: EventChannel,
        config: Optional[UpstreamConfig] = None,
    ) -> RelaySession:
        async with self._lock:
            existing = self.active_for(target)
            if existing is not None:
                raise ConflictError(
                    f"{target.key} is already owned by {existing.session_id} ({existing.state.value})"
                )
            session = RelaySession(
                target,
                config or self.default_config(),
                channel,
                stop_grace_sec=self.settings.STOP_GRACE_SEC,
                source_ready_timeout_sec=self.settings.SOURCE_READY_TIMEOUT_SEC,
                max_pending_chunks=self.settings.MAX_PENDING_CHUNKS,
            )
            self._sessions[session.session_id] = session
            self._by_target[target.key] = session.session_id
            self._evict_finished()

        # Acquisition happens outside the lock; the target is already claimed
        await session.start(self.source, self.adapter)
        log.info("session started", session_id=session.session_id, target=target.key)
        return session

    def get(self, session_id: str) -> RelaySession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"session {session_id} not found") from None

    def active_for(self, target: CaptureTarget) -> Optional[RelaySession]:
        session_id = self._by_target.get(target.key)
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.state.is_terminal:
            return None
        return session

    async def stop(self, session_id: str) -> RelaySession:
        session = self.get(session_id)
        await session.stop()
        return session

    async def stop_all(self):
        active = [s for s in self._sessions.values() if not s.state.is_terminal]
        if active:
            log.info("stopping sessions", count=len(active))
            await asyncio.gather(*(s.stop() for s in active), return_exceptions=True)

    def sessions(self) -> List[RelaySession]:
        return list(self._sessions.values())

    def _evict_finished(self):
        finished = [sid for sid, s in self._sessions.items() if s.state.is_terminal]
        excess = len(finished) - self.settings.MAX_RETAINED_SESSIONS
        for sid in finished[:max(0, excess)]:
            session = self._sessions.pop(sid)
            if self._by_target.get(session.target.key) == sid:
                del self._by_target[session.target.key]
