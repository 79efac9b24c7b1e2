from __future__ import annotations

from typing import Any

SNAPSHOT_ENVELOPE_TYPE = "snapshot"


def is_replay_event(value: Any) -> bool:
    """A structurally valid recorder event carries a numeric `type`."""
    if not isinstance(value, dict):
        return False
    kind = value.get("type")
    return isinstance(kind, (int, float)) and not isinstance(kind, bool)


def _is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == SNAPSHOT_ENVELOPE_TYPE and "data" in value


def flatten_events(value: Any) -> list[dict[str, Any]]:
    """Collapse any nesting of event lists into one flat, ordered list.

    Bare events become one-element lists; snapshot queue envelopes are opened;
    anything else is dropped.
    """
    flat: list[dict[str, Any]] = []
    stack: list[Any] = [value]
    while stack:
        item = stack.pop()
        if isinstance(item, list):
            stack.extend(reversed(item))
        elif is_replay_event(item):
            flat.append(item)
        elif _is_envelope(item):
            stack.append(item["data"])
    return flat
