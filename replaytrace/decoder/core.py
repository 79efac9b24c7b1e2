from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from replaytrace.decoder.flatten import flatten_events
from replaytrace.decoder.payload import (
    ByteSequence,
    HexText,
    JsonText,
    ParsedJson,
    Unrecognized,
    classify,
    tagged_bytes,
)
from replaytrace.decoder.strategies import BYTE_ATTEMPTS, TEXT_ATTEMPTS, AttemptFailed, text_to_bytes

logger = logging.getLogger(__name__)

MAX_STRING_WRAPS = 4
_PREVIEW_CHARS = 100
_HEAD_BYTES = 20


@dataclass(frozen=True)
class DecodeFailure:
    """Diagnostic context for a payload no attempt could decode."""

    reason: str
    byte_length: int
    preview: str
    head_hex: str
    attempts: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "byte_length": self.byte_length,
            "preview": self.preview,
            "head_hex": self.head_hex,
            "attempts": list(self.attempts),
        }


class SnapshotDecodeError(ValueError):
    def __init__(self, failure: DecodeFailure) -> None:
        super().__init__(f"{failure.reason} ({failure.byte_length} bytes)")
        self.failure = failure


def _printable(data: bytes) -> str:
    return "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in data[:_PREVIEW_CHARS])


def _failure(reason: str, data: bytes, attempts: list[str]) -> DecodeFailure:
    failure = DecodeFailure(
        reason=reason,
        byte_length=len(data),
        preview=_printable(data),
        head_hex=data[:_HEAD_BYTES].hex(),
        attempts=tuple(attempts),
    )
    logger.warning(
        "snapshot decode failed: %s (length=%d, head=%s, preview=%r)",
        reason,
        failure.byte_length,
        failure.head_hex,
        failure.preview,
    )
    return failure


def _run(attempts: tuple, value: Any, log: list[str]) -> list[dict[str, Any]] | None:
    for attempt in attempts:
        try:
            events = attempt(value)
        except AttemptFailed as exc:
            log.append(f"{attempt.__name__}: {exc}")
            logger.debug("decode attempt %s failed: %s", attempt.__name__, exc)
            continue
        logger.debug("decode attempt %s produced %d events", attempt.__name__, len(events))
        return events
    return None


def _json_string(text: str) -> str | None:
    stripped = text.strip()
    if not stripped.startswith('"'):
        return None
    try:
        inner = json.loads(stripped)
    except ValueError:
        return None
    return inner if isinstance(inner, str) else None


def _decode(raw: Any, depth: int) -> list[dict[str, Any]] | DecodeFailure:
    payload = classify(raw)
    log: list[str] = []

    if isinstance(payload, Unrecognized):
        return _failure(f"unsupported payload type {payload.type_name}", b"", log)

    if isinstance(payload, ParsedJson):
        data = tagged_bytes(payload.value)
        if data is None:
            return flatten_events(payload.value)
        payload = ByteSequence(data)

    if isinstance(payload, JsonText):
        inner = _json_string(payload.text)
        if inner is not None and depth < MAX_STRING_WRAPS:
            return _decode(inner, depth + 1)
        events = _run(TEXT_ATTEMPTS, payload.text, log)
        if events is not None:
            return events
        payload = ByteSequence(text_to_bytes(payload.text))

    data = payload.data if isinstance(payload, (HexText, ByteSequence)) else b""
    if not data:
        return _failure("empty payload", data, log)
    events = _run(BYTE_ATTEMPTS, data, log)
    if events is not None:
        return events
    return _failure("no decoding attempt succeeded", data, log)


def decode_snapshot(raw: Any) -> list[dict[str, Any]] | DecodeFailure:
    """Decode a received snapshot payload into a flat, ordered event list.

    Accepts text, bytes, or an already-parsed JSON value in any of the known
    wire encodings (hex escape, gzip, lz-string, plain JSON, tagged byte array,
    JSON string wrapping). Returns a `DecodeFailure` instead of raising.
    """
    try:
        return _decode(raw, 0)
    except RecursionError:
        return _failure("payload nested too deeply", b"", [])


def decode_snapshot_or_raise(raw: Any) -> list[dict[str, Any]]:
    result = decode_snapshot(raw)
    if isinstance(result, DecodeFailure):
        raise SnapshotDecodeError(result)
    return result
