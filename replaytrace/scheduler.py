"""Timer abstraction for the capture engine.

The engine never sleeps or busy-waits; it arms callbacks on a scheduler. Two
implementations exist: `ThreadScheduler`, a single worker thread that runs
callbacks one at a time like a page event loop, and `ManualScheduler`, a
deterministic clock driven by tests.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


@dataclass(order=True)
class TimerHandle:
    when: float
    seq: int
    callback: Callback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...

    def call_soon(self, callback: Callback) -> TimerHandle: ...

    def cancel(self, handle: TimerHandle) -> None: ...


def _run_callback(handle: TimerHandle) -> None:
    try:
        handle.callback()
    except Exception:
        logger.exception("scheduled callback %r failed", handle.callback)


class ManualScheduler:
    """Deterministic scheduler whose clock only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._heap: list[TimerHandle] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._heap, handle)
        return handle

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.call_later(0.0, callback)

    def cancel(self, handle: TimerHandle) -> None:
        handle.cancel()

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._heap if not handle.cancelled)

    def run_pending(self) -> int:
        """Fire every callback already due, including ones armed while firing."""
        fired = 0
        while self._heap and self._heap[0].when <= self._now:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            _run_callback(handle)
            fired += 1
        return fired

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks in due-time order."""
        target = self._now + seconds
        fired = 0
        while self._heap and self._heap[0].when <= target:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = max(self._now, handle.when)
            _run_callback(handle)
            fired += 1
        self._now = target
        return fired + self.run_pending()


class ThreadScheduler:
    """Runs callbacks serially on one daemon thread."""

    def __init__(self, name: str = "replaytrace-scheduler") -> None:
        self._name = name
        self._heap: list[TimerHandle] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread: threading.Thread | None = None

    def now(self) -> float:
        return time.time()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(time.monotonic() + max(0.0, delay), next(self._seq), callback)
        with self._cond:
            heapq.heappush(self._heap, handle)
            self._cond.notify_all()
        return handle

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.call_later(0.0, callback)

    def cancel(self, handle: TimerHandle) -> None:
        handle.cancel()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped:
                    while self._heap and self._heap[0].cancelled:
                        heapq.heappop(self._heap)
                    if not self._heap:
                        self._cond.wait()
                        continue
                    wait = self._heap[0].when - time.monotonic()
                    if wait <= 0:
                        break
                    self._cond.wait(timeout=wait)
                if self._stopped:
                    return
                handle = heapq.heappop(self._heap)
            _run_callback(handle)
