from __future__ import annotations

from replaytrace.decoder.core import (
    DecodeFailure,
    SnapshotDecodeError,
    decode_snapshot,
    decode_snapshot_or_raise,
)
from replaytrace.decoder.flatten import flatten_events, is_replay_event
from replaytrace.decoder.payload import classify
from replaytrace.decoder.strategies import AttemptFailed

__all__ = [
    "AttemptFailed",
    "DecodeFailure",
    "SnapshotDecodeError",
    "classify",
    "decode_snapshot",
    "decode_snapshot_or_raise",
    "flatten_events",
    "is_replay_event",
]
