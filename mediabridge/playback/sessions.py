import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"stream-{uuid.uuid4().hex}"


@dataclass
class PlaybackSession:
    """One byte-streaming proxy connection, as shown on the admin stats page."""

    item_id: str
    item_name: Optional[str] = None
    quality: str = "auto"
    bitrate: int = 0
    user_agent: str = "Unknown"
    client_ip: Optional[str] = None
    is_direct_play: bool = False
    transcode_reasons: List[str] = field(default_factory=list)
    play_session_id: Optional[str] = None
    media_source_id: Optional[str] = None
    session_id: str = field(default_factory=new_session_id)
    start_time: float = field(default_factory=time.time)
    bytes_transferred: int = 0

    def to_dict(self, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        return {
            "sessionId": self.session_id,
            "itemId": self.item_id,
            "itemName": self.item_name,
            "quality": self.quality,
            "bitrate": self.bitrate,
            "userAgent": self.user_agent,
            "clientIP": self.client_ip,
            "isDirectPlay": self.is_direct_play,
            "transcodeReasons": list(self.transcode_reasons),
            "playSessionId": self.play_session_id,
            "mediaSourceId": self.media_source_id,
            "startTime": int(self.start_time * 1000),
            "duration": max(0, int(now - self.start_time)),
            "bytesTransferred": self.bytes_transferred,
        }


class SessionRegistry:
    """
    In-memory table of active streaming sessions plus process-wide streaming counters.

    Records are removed when their connection ends, and independently by :meth:`sweep_stale`
    once they are older than the staleness threshold, whether or not the connection closed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[str, PlaybackSession] = {}
        self._lock = threading.Lock()
        self.total_bytes = 0
        self.total_streams = 0

    def register(self, session: PlaybackSession) -> PlaybackSession:
        with self._lock:
            self._sessions[session.session_id] = session
            self.total_streams += 1
        logger.info(f"Stream session {session.session_id} started for {session.item_name or session.item_id}")
        return session

    def touch(self, session_id: Optional[str], nbytes: int):
        """Account ``nbytes`` to the global bandwidth counter and to the session, if it is still registered."""
        with self._lock:
            self.total_bytes += nbytes
            session = self._sessions.get(session_id) if session_id else None
            if session is not None:
                session.bytes_transferred += nbytes

    def add_bandwidth(self, nbytes: int):
        self.touch(None, nbytes)

    def deregister(self, session_id: str) -> Optional[PlaybackSession]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            duration = self._clock() - session.start_time
            logger.info(
                f"Stream session {session_id} ended after {round(duration)}s ({session.bytes_transferred} bytes)"
            )
        return session

    def get(self, session_id: str) -> Optional[PlaybackSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session, transcode_reasons=list(session.transcode_reasons)) if session else None

    def list_active(self) -> List[dict]:
        now = self._clock()
        with self._lock:
            return [session.to_dict(now) for session in self._sessions.values()]

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sweep_stale(self, max_age: float) -> List[str]:
        """Remove every session started more than ``max_age`` seconds ago and return their ids."""
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [sid for sid, session in self._sessions.items() if session.start_time < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info(f"Swept {len(stale)} stale stream session(s)")
        return stale

    def snapshot(self) -> dict:
        with self._lock:
            return {"total_streams": self.total_streams, "total_bytes": self.total_bytes, "active": len(self._sessions)}


async def run_periodic_sweep(registry: SessionRegistry, interval: float, max_age: float):
    """Sweep stale sessions every ``interval`` seconds until cancelled."""
    while True:
        try:
            await asyncio.sleep(interval)
            registry.sweep_stale(max_age)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(f"Error sweeping stale sessions: {e}")
