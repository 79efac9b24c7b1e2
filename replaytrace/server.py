from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from replaytrace.decoder import DecodeFailure
from replaytrace.storage import CentralStore, replay_duration_ms
from replaytrace.types import EventBatch, SnapshotBatch

logger = logging.getLogger(__name__)


def create_app(db_path: Path) -> Any:
    """Create the FastAPI collection app."""
    import fastapi
    from fastapi.responses import JSONResponse

    store = CentralStore(db_path)
    store.ensure_storage()
    app = fastapi.FastAPI(title="ReplayTrace Collection API", version="0.1.0")

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/events/ingest")
    def ingest_events(batch: EventBatch) -> Any:
        if not batch.events:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid events", "message": "events must be a non-empty array"},
            )
        session, _ = store.find_or_create_session(batch.sdk_key, batch.session_id, batch.device_info)
        accepted = store.insert_events(session, batch.events)
        store.touch_session(session, accepted)
        return {"success": True, "session_id": session.id, "events_processed": accepted}

    @app.post("/api/snapshots/ingest")
    def ingest_snapshots(batch: SnapshotBatch) -> Any:
        if batch.snapshots in (None, "", [], {}):
            return JSONResponse(
                status_code=400,
                content={"error": "Missing required field", "message": "snapshots is required"},
            )
        session, created = store.find_or_create_session(batch.sdk_key, batch.session_id)
        snapshot, decoded = store.store_snapshot(session, batch.snapshots, batch.snapshot_count)
        store.touch_session(session, batch.snapshot_count)

        diagnostics = None
        if isinstance(decoded, DecodeFailure):
            logger.warning("quarantined snapshot batch %s for session %s", snapshot.id, batch.session_id)
            diagnostics = decoded.as_dict()
        return {
            "success": True,
            "session_id": session.id,
            "session_created": created,
            "snapshot_count": batch.snapshot_count,
            "decoded_count": snapshot.decoded_count,
            "quarantined": diagnostics is not None,
            "diagnostics": diagnostics,
        }

    @app.get("/api/sessions")
    def sessions(limit: int | None = None) -> dict[str, Any]:
        rows = store.list_sessions(limit=limit)
        return {"sessions": [row.model_dump() for row in rows]}

    @app.get("/api/sessions/{session_id}/replay")
    def replay(session_id: str, sdk_key: str) -> Any:
        session = store.get_session(sdk_key, session_id)
        if session is None:
            return JSONResponse(status_code=404, content={"error": "Session not found"})
        events, failures = store.replay_events(session)
        return {
            "session_id": session.session_id,
            "event_count": len(events),
            "events": events,
            "duration_ms": replay_duration_ms(events),
            "failures": [failure.as_dict() for failure in failures],
        }

    return app
