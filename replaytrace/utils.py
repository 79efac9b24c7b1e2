from __future__ import annotations

import json
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_BASE36 = string.digits + string.ascii_lowercase


def now_ts() -> float:
    """Current time in seconds as float."""
    return time.time()


def to_ms(ts: float) -> int:
    """Convert epoch seconds to epoch milliseconds."""
    return int(ts * 1000)


def iso_from_ts(ts: float) -> str:
    """Render epoch seconds as an ISO-8601 UTC string with millisecond precision."""
    stamp = datetime.fromtimestamp(ts, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str = "evt") -> str:
    """Generate a short-ish unique identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def new_session_id(epoch_ms: int) -> str:
    """Create a recorder session id of the form sess_<epoch-ms>_<random>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"sess_{epoch_ms}_{suffix}"


def read_json(path: Path) -> Any:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
