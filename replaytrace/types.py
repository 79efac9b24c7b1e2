from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CapturedEvent(BaseModel):
    """A discrete interaction event as it leaves the recorder."""

    model_config = ConfigDict(frozen=True)

    type: str
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)


class SnapshotRecord(BaseModel):
    """An opaque recorder payload waiting in the snapshot queue."""

    model_config = ConfigDict(frozen=True)

    type: Literal["snapshot"] = "snapshot"
    timestamp: int
    data: Any = None


class DeviceInfo(BaseModel):
    """Read-once environment descriptor attached to every event batch."""

    model_config = ConfigDict(extra="allow")

    user_agent: str = ""
    platform: str = ""
    language: str | None = None
    timezone: str | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None
    url: str = ""
    referrer: str = ""


class EventBatch(BaseModel):
    """Egress body for an event flush."""

    sdk_key: str
    session_id: str
    events: list[dict[str, Any]] = Field(default_factory=list)
    device_info: dict[str, Any] = Field(default_factory=dict)
    user_properties: dict[str, Any] = Field(default_factory=dict)


class SnapshotBatch(BaseModel):
    """Egress body for a snapshot flush; `snapshots` is the serialized batch."""

    sdk_key: str
    session_id: str
    snapshots: Any
    snapshot_count: int = 1
