from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from replaytrace.models.enums import DecodeStatus, SessionStatus


class Session(BaseModel):
    """Recorder-side session owned by one capture engine."""

    id: str
    started_at: int
    last_activity_at: int
    status: SessionStatus = SessionStatus.ACTIVE

    def duration_ms(self, now_ms: int) -> int:
        return max(0, now_ms - self.started_at)


class StoredSession(BaseModel):
    """Server-side session row."""

    id: str
    sdk_key: str
    session_id: str
    start_time: float
    last_activity_time: float
    event_count: int = 0
    device_info: Dict[str, Any] = Field(default_factory=dict)


class StoredSnapshot(BaseModel):
    id: str
    session_pk: str
    created_at: float
    snapshot_count: int
    status: DecodeStatus
    decoded_count: Optional[int] = None


@dataclass(frozen=True)
class QueuedItem:
    """A queued payload tagged with the session it was captured in.

    `counted` is False for synthetic markers that do not count toward the batch size.
    """

    session_id: str
    payload: Dict[str, Any]
    counted: bool = True
