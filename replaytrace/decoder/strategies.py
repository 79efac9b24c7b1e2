"""Individual decoding attempts.

Every attempt is a pure function that returns a flat event list or raises
`AttemptFailed`. The coordinator in `replaytrace.decoder.core` runs them in
order and keeps the first success.
"""

from __future__ import annotations

import gzip
import json
import zlib
from typing import Any, Callable

from lzstring import LZString

from replaytrace.decoder.flatten import flatten_events
from replaytrace.decoder.payload import tagged_bytes


class AttemptFailed(Exception):
    """One decoding attempt did not apply to the payload."""


TextAttempt = Callable[[str], list[dict[str, Any]]]
ByteAttempt = Callable[[bytes], list[dict[str, Any]]]


def _parse_structure(text: str) -> Any:
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise AttemptFailed(f"not JSON: {exc}") from exc
    if not isinstance(parsed, (list, dict)):
        raise AttemptFailed(f"JSON scalar {type(parsed).__name__}")
    return parsed


def _flatten_parsed(parsed: Any) -> list[dict[str, Any]]:
    if tagged_bytes(parsed) is not None:
        raise AttemptFailed("tagged byte array, needs byte decoding")
    return flatten_events(parsed)


def _utf16_units(text: str) -> str:
    # lz-string works on UTF-16 code units; split astral characters back into surrogates.
    if all(ord(char) <= 0xFFFF for char in text):
        return text
    units: list[str] = []
    for char in text:
        code = ord(char)
        if code <= 0xFFFF:
            units.append(char)
        else:
            code -= 0x10000
            units.append(chr(0xD800 + (code >> 10)))
            units.append(chr(0xDC00 + (code & 0x3FF)))
    return "".join(units)


def lz_decompress(text: str) -> str:
    if not text:
        raise AttemptFailed("empty input")
    try:
        result = LZString().decompress(_utf16_units(text))
    except Exception as exc:  # lzstring raises assorted errors on corrupt input
        raise AttemptFailed(f"lz-string error: {exc!r}") from exc
    if not result:
        raise AttemptFailed("lz-string produced no output")
    return result


def plain_json_text(text: str) -> list[dict[str, Any]]:
    trimmed = text.strip()
    if not trimmed.startswith(("[", "{")):
        raise AttemptFailed("does not start with [ or {")
    return _flatten_parsed(_parse_structure(trimmed))


def lz_text(text: str) -> list[dict[str, Any]]:
    return _flatten_parsed(_parse_structure(lz_decompress(text)))


def text_to_bytes(text: str) -> bytes:
    """Turn text into the byte form used by the byte attempts.

    A JSON byte-array description is reassembled; any other text is read as one
    byte per character, keeping the low eight bits.
    """
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    data = tagged_bytes(parsed)
    if data is not None:
        return data
    return bytes(ord(char) & 0xFF for char in text)


def gzip_json(data: bytes) -> list[dict[str, Any]]:
    try:
        inflated = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise AttemptFailed(f"not gzip: {exc}") from exc
    try:
        text = inflated.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AttemptFailed(f"gzip content is not UTF-8: {exc}") from exc
    return _flatten_parsed(_parse_structure(text))


def lz_latin1(data: bytes) -> list[dict[str, Any]]:
    return lz_text(data.decode("latin-1"))


def lz_utf8(data: bytes) -> list[dict[str, Any]]:
    try:
        text = data.decode("utf-8", "surrogatepass")
    except UnicodeDecodeError as exc:
        raise AttemptFailed(f"not UTF-8: {exc}") from exc
    return lz_text(text)


def plain_json_bytes(data: bytes) -> list[dict[str, Any]]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    return plain_json_text(text)


TEXT_ATTEMPTS: tuple[TextAttempt, ...] = (plain_json_text, lz_text)
BYTE_ATTEMPTS: tuple[ByteAttempt, ...] = (gzip_json, lz_latin1, lz_utf8, plain_json_bytes)
