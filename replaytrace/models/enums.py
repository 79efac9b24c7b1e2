from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class LifecycleEvent(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    PAGE_VIEW = "page_view"
    PAGE_HIDDEN = "page_hidden"
    PAGE_VISIBLE = "page_visible"
    PAGE_UNLOAD = "page_unload"


class QueueKind(str, Enum):
    EVENTS = "events"
    SNAPSHOTS = "snapshots"


class DecodeStatus(str, Enum):
    DECODED = "decoded"
    QUARANTINED = "quarantined"
