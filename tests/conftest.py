from __future__ import annotations

from typing import Any, Callable

import pytest

from replaytrace.config import CaptureConfig
from replaytrace.context import PageContext
from replaytrace.engine import CaptureEngine
from replaytrace.scheduler import ManualScheduler
from replaytrace.types import DeviceInfo


class RecordingTransport:
    """In-memory transport: records every attempt, succeeds unless told to fail."""

    def __init__(self) -> None:
        self.fail = False
        self.raise_error: Exception | None = None
        self.attempts: list[tuple[str, dict[str, Any]]] = []
        self.delivered: list[tuple[str, dict[str, Any]]] = []
        self.beacons: list[tuple[str, dict[str, Any]]] = []

    def send(self, endpoint: str, body: dict[str, Any]) -> bool:
        self.attempts.append((endpoint, body))
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail:
            return False
        self.delivered.append((endpoint, body))
        return True

    def beacon(self, endpoint: str, body: dict[str, Any]) -> bool:
        self.beacons.append((endpoint, body))
        return True


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_engine(
    transport: RecordingTransport, scheduler: ManualScheduler
) -> Callable[..., CaptureEngine]:
    def _make(**overrides: Any) -> CaptureEngine:
        values: dict[str, Any] = {"api_url": "https://collect.example", "sdk_key": "sdk_test"}
        values.update(overrides)
        return CaptureEngine(
            CaptureConfig(**values),
            transport=transport,
            scheduler=scheduler,
            page=PageContext(url="https://shop.example/cart?step=2", title="Cart"),
            device_info=DeviceInfo(user_agent="pytest", platform="test"),
        )

    return _make
