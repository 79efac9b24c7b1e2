from __future__ import annotations

import csv
import importlib.util
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from replaytrace.decoder import DecodeFailure, decode_snapshot
from replaytrace.models.entities import StoredSession, StoredSnapshot
from replaytrace.models.enums import DecodeStatus
from replaytrace.utils import new_id, now_ts

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = [
    "id",
    "sdk_key",
    "session_id",
    "start_time",
    "last_activity_time",
    "event_count",
    "device_info",
]

_EVENT_COLUMNS = [
    "id",
    "session_pk",
    "type",
    "timestamp",
    "data",
]

_EXPORT_COLUMNS = [
    "session_id",
    "type",
    "timestamp",
    "url",
    "path",
    "title",
    "data",
]


class CentralStore:
    """SQLite-backed storage for ingested sessions, events and snapshot batches."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def ensure_storage(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    sdk_key TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    start_time REAL NOT NULL,
                    last_activity_time REAL NOT NULL,
                    event_count INTEGER NOT NULL DEFAULT 0,
                    device_info TEXT NOT NULL DEFAULT '{}',
                    UNIQUE (sdk_key, session_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    session_pk TEXT NOT NULL,
                    type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data TEXT NOT NULL,
                    FOREIGN KEY (session_pk) REFERENCES sessions(id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    session_pk TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    snapshot_count INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    decoded_count INTEGER,
                    encoding TEXT NOT NULL,
                    snapshot_data BLOB NOT NULL,
                    FOREIGN KEY (session_pk) REFERENCES sessions(id)
                )
                """
            )
            conn.commit()

    # -- sessions --------------------------------------------------------

    def find_or_create_session(
        self,
        sdk_key: str,
        session_id: str,
        device_info: dict[str, Any] | None = None,
    ) -> tuple[StoredSession, bool]:
        existing = self.get_session(sdk_key, session_id)
        if existing is not None:
            return existing, False

        now = now_ts()
        session = StoredSession(
            id=new_id("ses"),
            sdk_key=sdk_key,
            session_id=session_id,
            start_time=now,
            last_activity_time=now,
            device_info=device_info or {},
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO sessions (
                    id, sdk_key, session_id, start_time, last_activity_time, event_count, device_info
                ) VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    session.id,
                    sdk_key,
                    session_id,
                    now,
                    now,
                    json.dumps(session.device_info, default=str),
                ),
            )
            conn.commit()
        stored = self.get_session(sdk_key, session_id)
        if stored is None:
            raise RuntimeError(f"failed to create session {session_id}")
        return stored, stored.id == session.id

    def get_session(self, sdk_key: str, session_id: str) -> StoredSession | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_SESSION_COLUMNS)} FROM sessions WHERE sdk_key = ? AND session_id = ?",
                (sdk_key, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, limit: int | None = None) -> list[StoredSession]:
        query = f"SELECT {', '.join(_SESSION_COLUMNS)} FROM sessions ORDER BY start_time ASC, rowid ASC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session: StoredSession, added_events: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE sessions
                SET last_activity_time = ?,
                    event_count = event_count + ?
                WHERE id = ?
                """,
                (now_ts(), added_events, session.id),
            )
            conn.commit()

    # -- events ----------------------------------------------------------

    def insert_events(self, session: StoredSession, events: list[Any]) -> int:
        accepted = 0
        with self._connect() as conn:
            for event in events:
                if not self._is_valid_event(event):
                    continue
                data = event.get("data")
                conn.execute(
                    "INSERT INTO events (id, session_pk, type, timestamp, data) VALUES (?, ?, ?, ?, ?)",
                    (
                        new_id("evt"),
                        session.id,
                        str(event["type"]),
                        str(event.get("timestamp") or ""),
                        json.dumps(data if isinstance(data, dict) else {}, default=str),
                    ),
                )
                accepted += 1
            conn.commit()
        return accepted

    def list_events(self, session: StoredSession | None = None) -> list[dict[str, Any]]:
        query = f"SELECT {', '.join('e.' + c for c in _EVENT_COLUMNS)}, s.session_id FROM events e JOIN sessions s ON s.id = e.session_pk"
        params: tuple[Any, ...] = ()
        if session is not None:
            query += " WHERE e.session_pk = ?"
            params = (session.id,)
        query += " ORDER BY e.rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        records: list[dict[str, Any]] = []
        for row in rows:
            record = dict(zip([*_EVENT_COLUMNS, "session_id"], row, strict=True))
            record["data"] = json.loads(record["data"])
            records.append(record)
        return records

    def export_events(self, output_path: Path, fmt: str) -> int:
        payload = [self._export_payload(row) for row in self.list_events()]
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if fmt == "csv":
            with output_path.open("w", encoding="utf-8", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=_EXPORT_COLUMNS)
                writer.writeheader()
                writer.writerows(payload)
            return len(payload)

        if fmt == "parquet":
            if importlib.util.find_spec("pandas") is None or importlib.util.find_spec("pyarrow") is None:
                raise RuntimeError("parquet export requires pandas and pyarrow")
            import pandas as pd

            frame = pd.DataFrame(payload, columns=_EXPORT_COLUMNS)
            frame.to_parquet(output_path, index=False)
            return len(payload)

        if fmt == "jsonl":
            with output_path.open("w", encoding="utf-8") as handle:
                for event_payload in payload:
                    handle.write(json.dumps(event_payload) + "\n")
            return len(payload)

        raise ValueError(f"unsupported format: {fmt}")

    # -- snapshots -------------------------------------------------------

    def store_snapshot(
        self,
        session: StoredSession,
        snapshots: Any,
        snapshot_count: int,
    ) -> tuple[StoredSnapshot, list[dict[str, Any]] | DecodeFailure]:
        """Store a received batch as bytes and record whether it decodes."""
        decoded = decode_snapshot(snapshots)
        if isinstance(decoded, DecodeFailure):
            status, decoded_count = DecodeStatus.QUARANTINED, None
        else:
            status, decoded_count = DecodeStatus.DECODED, len(decoded)

        snapshot = StoredSnapshot(
            id=new_id("snp"),
            session_pk=session.id,
            created_at=now_ts(),
            snapshot_count=snapshot_count,
            status=status,
            decoded_count=decoded_count,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO snapshots (
                    id, session_pk, created_at, snapshot_count, status, decoded_count, encoding, snapshot_data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    session.id,
                    snapshot.created_at,
                    snapshot_count,
                    status.value,
                    decoded_count,
                    *_to_blob(snapshots),
                ),
            )
            conn.commit()
        return snapshot, decoded

    def session_snapshots(self, session: StoredSession, include_quarantined: bool = False) -> list[tuple[StoredSnapshot, Any]]:
        query = """
            SELECT id, session_pk, created_at, snapshot_count, status, decoded_count, encoding, snapshot_data
            FROM snapshots
            WHERE session_pk = ?
        """
        params: tuple[Any, ...] = (session.id,)
        if not include_quarantined:
            query += " AND status = ?"
            params = (session.id, DecodeStatus.DECODED.value)
        query += " ORDER BY seq ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            (
                StoredSnapshot(
                    id=row[0],
                    session_pk=row[1],
                    created_at=row[2],
                    snapshot_count=row[3],
                    status=DecodeStatus(row[4]),
                    decoded_count=row[5],
                ),
                _from_blob(row[6], bytes(row[7])),
            )
            for row in rows
        ]

    def replay_events(self, session: StoredSession) -> tuple[list[dict[str, Any]], list[DecodeFailure]]:
        """Decode every stored batch of a session and concatenate them in arrival order."""
        events: list[dict[str, Any]] = []
        failures: list[DecodeFailure] = []
        for snapshot, raw in self.session_snapshots(session):
            decoded = decode_snapshot(raw)
            if isinstance(decoded, DecodeFailure):
                logger.warning("stored snapshot %s no longer decodes", snapshot.id)
                failures.append(decoded)
                continue
            events.extend(decoded)
        return events, failures

    def session_duration_ms(self, session: StoredSession) -> int | None:
        events, _ = self.replay_events(session)
        return replay_duration_ms(events)

    # -- helpers ---------------------------------------------------------

    def _is_valid_event(self, event: Any) -> bool:
        return isinstance(event, dict) and isinstance(event.get("type"), str) and bool(event["type"])

    def _session_from_row(self, row: tuple[Any, ...]) -> StoredSession:
        record = dict(zip(_SESSION_COLUMNS, row, strict=True))
        record["device_info"] = json.loads(record["device_info"] or "{}")
        return StoredSession.model_validate(record)

    def _export_payload(self, row: dict[str, Any]) -> dict[str, Any]:
        data = row["data"]
        return {
            "session_id": row["session_id"],
            "type": row["type"],
            "timestamp": row["timestamp"],
            "url": data.get("url", ""),
            "path": data.get("path", ""),
            "title": data.get("title", ""),
            "data": json.dumps(data, sort_keys=True),
        }

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)


def replay_duration_ms(events: list[dict[str, Any]]) -> int | None:
    """Duration between the first and last timestamped replay events, if any."""
    stamps = [
        event["timestamp"]
        for event in events
        if isinstance(event.get("timestamp"), (int, float)) and not isinstance(event.get("timestamp"), bool)
    ]
    if len(stamps) < 2 or stamps[-1] <= stamps[0]:
        return None
    return int(stamps[-1] - stamps[0])


def _to_blob(snapshots: Any) -> tuple[str, bytes]:
    """Return (encoding, bytes) so a stored batch can be handed back in its received form."""
    if isinstance(snapshots, (bytes, bytearray, memoryview)):
        return "bytes", bytes(snapshots)
    if isinstance(snapshots, str):
        return "text", snapshots.encode("utf-8", "surrogatepass")
    return "json", json.dumps(snapshots, default=str).encode("utf-8")


def _from_blob(encoding: str, blob: bytes) -> Any:
    if encoding == "text":
        return blob.decode("utf-8", "surrogatepass")
    if encoding == "json":
        return json.loads(blob.decode("utf-8"))
    return blob
