from __future__ import annotations

import logging

from replaytrace.models.entities import Session
from replaytrace.models.enums import SessionStatus
from replaytrace.utils import new_session_id

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the single active session of a capture engine."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        self._current: Session | None = None
        self._issued: set[str] = set()
        self._last_activity_at: int | None = None

    @property
    def current(self) -> Session | None:
        return self._current

    @property
    def last_activity_at(self) -> int | None:
        return self._last_activity_at

    def ensure(self, now_ms: int) -> tuple[Session, bool]:
        """Return the active session, starting a fresh one if none exists."""
        if self._current is not None:
            return self._current, False

        session_id = new_session_id(now_ms)
        while session_id in self._issued:
            session_id = new_session_id(now_ms)
        self._issued.add(session_id)
        self._current = Session(id=session_id, started_at=now_ms, last_activity_at=now_ms)
        self._last_activity_at = now_ms
        logger.debug("started session %s", session_id)
        return self._current, True

    def touch(self, now_ms: int) -> None:
        self._last_activity_at = now_ms
        if self._current is not None:
            self._current = self._current.model_copy(update={"last_activity_at": now_ms})

    def expired(self, now_ms: int) -> bool:
        if self._current is None or self._last_activity_at is None:
            return False
        return now_ms - self._last_activity_at > self.timeout_ms

    def end(self, now_ms: int) -> Session | None:
        """Clear the active session and return it, marked ended."""
        if self._current is None:
            return None
        ended = self._current.model_copy(update={"status": SessionStatus.ENDED})
        self._current = None
        logger.debug("ended session %s after %d ms", ended.id, ended.duration_ms(now_ms))
        return ended
