import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Set

from sse_pulse.session import SessionState, StreamSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSummary:
    id: str
    state: SessionState
    sequence: Optional[int]
    events_sent: int
    started_at: datetime

    @classmethod
    def of(cls, session: StreamSession) -> "SessionSummary":
        return cls(
            id=session.id,
            state=session.state,
            sequence=session.sequence,
            events_sent=session.events_sent,
            started_at=session.started_at,
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "sequence": self.sequence,
            "events_sent": self.events_sent,
            "started_at": self.started_at.isoformat(),
        }


class SessionRegistry:
    """In-memory map of session id to session, safe to use from several threads."""

    def __init__(self) -> None:
        self._sessions: Dict[str, StreamSession] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session: object) -> bool:
        with self._lock:
            return isinstance(session, StreamSession) and session.id in self._sessions

    def register(self, session: StreamSession) -> None:
        with self._lock:
            self._sessions[session.id] = session
            count = len(self._sessions)
        logger.debug("registered session %s, %d active", session.id, count)

    def unregister(self, session: StreamSession) -> None:
        with self._lock:
            removed = self._sessions.pop(session.id, None)
            count = len(self._sessions)
        if removed is not None:
            logger.debug("unregistered session %s, %d active", session.id, count)

    def get(self, session_id: str) -> Optional[StreamSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_active(self) -> Set[SessionSummary]:
        with self._lock:
            sessions = list(self._sessions.values())
        return {SessionSummary.of(s) for s in sessions if not s.state.terminal}

    def cancel_all(self) -> int:
        """Cancel every registered session; returns how many were cancelled.

        Must be called from the event loop thread the sessions run on.
        """
        with self._lock:
            sessions = list(self._sessions.values())
        cancelled = 0
        for session in sessions:
            if not session.state.terminal:
                session.cancel()
                cancelled += 1
        if cancelled:
            logger.info("cancelled %d active session(s)", cancelled)
        return cancelled
