"""Wire-shape classification for snapshot payloads.

A received `snapshots` value arrives with no format tag. `classify` resolves it
once, at the decoder entry point, into one of the known shapes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)

HEX_PREFIX = "\\x"


@dataclass(frozen=True)
class HexText:
    """Storage-layer escape: `\\x` followed by hex digits of a byte string."""

    data: bytes


@dataclass(frozen=True)
class JsonText:
    """Any other text: plain JSON, LZ text, tagged byte array or binary-as-text."""

    text: str


@dataclass(frozen=True)
class ByteSequence:
    data: bytes


@dataclass(frozen=True)
class ParsedJson:
    """A value that was already parsed out of a JSON request body."""

    value: Any


@dataclass(frozen=True)
class Unrecognized:
    type_name: str


WirePayload = Union[HexText, JsonText, ByteSequence, ParsedJson, Unrecognized]


def classify(raw: Any) -> WirePayload:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return ByteSequence(bytes(raw))
    if isinstance(raw, str):
        if raw.startswith(HEX_PREFIX):
            try:
                return HexText(bytes.fromhex(raw[len(HEX_PREFIX):]))
            except ValueError:
                logger.debug("hex-escaped payload has invalid digits, treating as text")
        return JsonText(raw)
    if isinstance(raw, (list, dict)):
        return ParsedJson(raw)
    return Unrecognized(type(raw).__name__)


def tagged_bytes(value: Any) -> bytes | None:
    """Reassemble a `{"type": "Buffer", "data": [...]}` byte-array description."""
    if not isinstance(value, dict) or value.get("type") != "Buffer":
        return None
    data = value.get("data")
    if not isinstance(data, list):
        return None
    try:
        return bytes(data)
    except (TypeError, ValueError):
        return None
