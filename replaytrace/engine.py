"""Capture and batching engine.

One `CaptureEngine` is built per page (or process) and passed to whatever
instruments the application. It owns the event queue, the snapshot queue, the
active session and the flush timers; nothing else mutates them.

`track` and `capture_snapshot` never block and never raise. Deliveries run on
the scheduler, and a failed delivery puts its items back at the front of their
queue for the next flush.
"""

from __future__ import annotations

import json
import logging
import threading
from functools import partial
from typing import Any

from lzstring import LZString

from replaytrace.buffer import BoundedQueue
from replaytrace.config import CaptureConfig, ConfigurationError
from replaytrace.context import PageContext, collect_device_info
from replaytrace.models.entities import QueuedItem, Session
from replaytrace.models.enums import LifecycleEvent, QueueKind
from replaytrace.scheduler import Scheduler, ThreadScheduler, TimerHandle
from replaytrace.session import SessionManager
from replaytrace.transport import EVENTS_ENDPOINT, SNAPSHOTS_ENDPOINT, HttpTransport, Transport
from replaytrace.types import CapturedEvent, DeviceInfo, EventBatch, SnapshotBatch, SnapshotRecord
from replaytrace.utils import iso_from_ts, to_ms

logger = logging.getLogger(__name__)


def _has_payload(record: dict[str, Any]) -> bool:
    data = record.get("data")
    if data is None:
        return False
    if isinstance(data, dict) and not data:
        return False
    return True


def serialize_snapshots(records: list[dict[str, Any]], compress: bool = False) -> str:
    """Serialize a snapshot batch for the wire, optionally lz-string compressed."""
    try:
        text = json.dumps(records, default=str)
    except (TypeError, ValueError) as exc:
        logger.warning("snapshot batch not serializable (%s); sending timestamps only", exc)
        text = json.dumps([{"type": r.get("type"), "timestamp": r.get("timestamp")} for r in records])
    if compress:
        return LZString().compress(text)
    return text


class CaptureEngine:
    def __init__(
        self,
        config: CaptureConfig,
        *,
        transport: Transport | None = None,
        scheduler: Scheduler | None = None,
        page: PageContext | None = None,
        device_info: DeviceInfo | None = None,
    ) -> None:
        self.config = config
        self.page = page if page is not None else PageContext()
        self.enabled = True
        try:
            config.require_complete()
        except ConfigurationError as exc:
            logger.warning("capture disabled: %s", exc)
            self.enabled = False

        self._scheduler: Scheduler = scheduler if scheduler is not None else ThreadScheduler()
        self._transport: Transport | None = transport
        if self._transport is None and config.api_url:
            self._transport = HttpTransport(
                config.api_url,
                timeout=config.request_timeout,
                beacon_timeout=config.beacon_timeout,
            )

        self._lock = threading.RLock()
        self._queues: dict[QueueKind, BoundedQueue[QueuedItem]] = {
            QueueKind.EVENTS: BoundedQueue(config.max_queue_size),
            QueueKind.SNAPSHOTS: BoundedQueue(config.max_queue_size),
        }
        self._timers: dict[QueueKind, TimerHandle | None] = {kind: None for kind in QueueKind}
        # batches taken from a queue whose delivery has not completed; at most one set per queue
        self._inflight: dict[QueueKind, list[list[QueuedItem]] | None] = {kind: None for kind in QueueKind}
        self._reflush: dict[QueueKind, bool] = {kind: False for kind in QueueKind}
        self._redrain: dict[QueueKind, bool] = {kind: False for kind in QueueKind}
        self._session_timer: TimerHandle | None = None
        self._sessions = SessionManager(timeout_ms=int(config.session_timeout * 1000))
        self._device_info = device_info if device_info is not None else collect_device_info(self.page)
        self._user_properties: dict[str, Any] = {}
        self._closed = False

    # -- state -----------------------------------------------------------

    @property
    def session(self) -> Session | None:
        return self._sessions.current

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    @property
    def user_properties(self) -> dict[str, Any]:
        return dict(self._user_properties)

    @property
    def pending_events(self) -> list[dict[str, Any]]:
        return [item.payload for item in self._queues[QueueKind.EVENTS]]

    @property
    def pending_snapshots(self) -> list[dict[str, Any]]:
        return [item.payload for item in self._queues[QueueKind.SNAPSHOTS]]

    def _now_ms(self) -> int:
        return to_ms(self._scheduler.now())

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler (when owned) and the idle-session check."""
        if not self.enabled:
            return
        if isinstance(self._scheduler, ThreadScheduler):
            self._scheduler.start()
        with self._lock:
            self._arm_session_check()
        self.track_page_view()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for kind, handle in self._timers.items():
                if handle is not None:
                    self._scheduler.cancel(handle)
                    self._timers[kind] = None
            if self._session_timer is not None:
                self._scheduler.cancel(self._session_timer)
                self._session_timer = None
        if isinstance(self._scheduler, ThreadScheduler):
            self._scheduler.stop()

    def _arm_session_check(self) -> None:
        if self._closed:
            return
        self._session_timer = self._scheduler.call_later(
            self.config.session_check_interval, self._on_session_check
        )

    def _on_session_check(self) -> None:
        with self._lock:
            self._session_timer = None
            self.check_session_timeout()
            self._arm_session_check()

    # -- ingress ---------------------------------------------------------

    def track(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Queue an interaction event, starting a session first if needed."""
        if not self.enabled or self._closed:
            return
        with self._lock:
            self.check_session_timeout()
            now = self._scheduler.now()
            session, created = self._sessions.ensure(to_ms(now))
            if created:
                self._start_marker(session, now)
            self._enqueue_event(session, event_type, data, now)
            self._sessions.touch(to_ms(now))
            self._after_enqueue(QueueKind.EVENTS)

    def capture_snapshot(self, payload: Any) -> None:
        """Queue an opaque recorder payload under the same batching policy."""
        if not self.enabled or self._closed:
            return
        with self._lock:
            self.check_session_timeout()
            now = self._scheduler.now()
            session, created = self._sessions.ensure(to_ms(now))
            if created:
                self._start_marker(session, now)
                self._after_enqueue(QueueKind.EVENTS)
            record = SnapshotRecord(timestamp=to_ms(now), data=payload)
            self._append(QueueKind.SNAPSHOTS, QueuedItem(session.id, record.model_dump()))
            self._sessions.touch(to_ms(now))
            self._after_enqueue(QueueKind.SNAPSHOTS)

    def track_page_view(self) -> None:
        self.track(LifecycleEvent.PAGE_VIEW.value)

    def navigate(self, url: str, title: str | None = None) -> None:
        with self._lock:
            self.page.url = url
            if title is not None:
                self.page.title = title
        self.track_page_view()

    def identify(self, user_id: str, properties: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._user_properties.update(properties or {})
            self._user_properties["user_id"] = user_id

    def set_user_properties(self, properties: dict[str, Any]) -> None:
        with self._lock:
            self._user_properties.update(properties)

    def _start_marker(self, session: Session, now: float) -> None:
        # rides along with the next batch without counting toward batch_size
        self._enqueue_event(
            session, LifecycleEvent.SESSION_START.value, {"timestamp": iso_from_ts(now)}, now, counted=False
        )

    def _enqueue_event(
        self,
        session: Session,
        event_type: str,
        data: dict[str, Any] | None,
        now: float,
        counted: bool = True,
    ) -> None:
        event = CapturedEvent(type=event_type, timestamp=iso_from_ts(now), data=self.page.annotate(data))
        self._append(QueueKind.EVENTS, QueuedItem(session.id, event.model_dump(), counted))

    def _append(self, kind: QueueKind, item: QueuedItem) -> None:
        evicted = self._queues[kind].append(item)
        if evicted is not None:
            logger.debug("%s queue full, evicted oldest item", kind.value)

    # -- flushing --------------------------------------------------------

    def _counted(self, kind: QueueKind) -> int:
        return sum(1 for item in self._queues[kind] if item.counted)

    def _after_enqueue(self, kind: QueueKind) -> None:
        if self._counted(kind) >= self.config.batch_size:
            self._flush(kind)
        else:
            self._arm_flush(kind)

    def _arm_flush(self, kind: QueueKind) -> None:
        if self._timers[kind] is not None or self.config.flush_interval <= 0 or self._closed:
            return
        self._timers[kind] = self._scheduler.call_later(self.config.flush_interval, partial(self._on_flush_timer, kind))

    def _on_flush_timer(self, kind: QueueKind) -> None:
        with self._lock:
            self._timers[kind] = None
            self._flush(kind)

    def flush_events(self) -> None:
        with self._lock:
            self._flush(QueueKind.EVENTS)

    def flush_snapshots(self) -> None:
        with self._lock:
            self._flush(QueueKind.SNAPSHOTS)

    def flush_all(self) -> None:
        """Drain both queues completely, one batch per request."""
        with self._lock:
            for kind in QueueKind:
                self._flush(kind, drain=True)

    def _flush(self, kind: QueueKind, drain: bool = False) -> None:
        handle = self._timers[kind]
        if handle is not None:
            self._scheduler.cancel(handle)
            self._timers[kind] = None
        if self._inflight[kind] is not None:
            # picked up again when the delivery in progress completes
            self._reflush[kind] = True
            self._redrain[kind] = self._redrain[kind] or drain
            return

        queue = self._queues[kind]
        batches: list[list[QueuedItem]] = []
        while queue and (drain or not batches):
            batches.append(
                queue.take(
                    self.config.batch_size,
                    key=lambda item: item.session_id,
                    weight=lambda item: 1 if item.counted else 0,
                )
            )
        if not batches:
            return
        self._inflight[kind] = batches
        self._scheduler.call_soon(partial(self._deliver, kind, batches))
        if queue:
            self._arm_flush(kind)

    def _build_body(self, kind: QueueKind, items: list[QueuedItem]) -> dict[str, Any] | None:
        session_id = items[0].session_id
        sdk_key = self.config.sdk_key or ""
        if kind is QueueKind.EVENTS:
            return EventBatch(
                sdk_key=sdk_key,
                session_id=session_id,
                events=[item.payload for item in items],
                device_info=self._device_info.model_dump(),
                user_properties=dict(self._user_properties),
            ).model_dump()
        records = [item.payload for item in items if _has_payload(item.payload)]
        if not records:
            logger.debug("dropped %d empty snapshot records", len(items))
            return None
        return SnapshotBatch(
            sdk_key=sdk_key,
            session_id=session_id,
            snapshots=serialize_snapshots(records, self.config.compress_snapshots),
            snapshot_count=len(records),
        ).model_dump()

    def _deliver(self, kind: QueueKind, batches: list[list[QueuedItem]]) -> None:
        """Send taken batches in order; on the first failure put it and the rest back."""
        with self._lock:
            if self._inflight[kind] is not batches:
                return
            bodies = [self._build_body(kind, items) for items in batches]

        failed_at: int | None = None
        for index, (items, body) in enumerate(zip(batches, bodies)):
            if body is not None and not self._send(kind, items, body):
                failed_at = index
                break

        with self._lock:
            if self._inflight[kind] is not batches:
                return
            self._inflight[kind] = None
            reflush, drain = self._reflush[kind], self._redrain[kind]
            self._reflush[kind] = self._redrain[kind] = False

            if failed_at is not None:
                unsent = [item for items in batches[failed_at:] for item in items]
                dropped = self._queues[kind].requeue(unsent)
                if dropped:
                    logger.warning(
                        "%s queue full after failed delivery, dropped %d newest items", kind.value, len(dropped)
                    )
                logger.info("requeued %d %s for retry", len(unsent), kind.value)
                self._arm_flush(kind)
                return

            if not self._queues[kind]:
                return
            if reflush or self._counted(kind) >= self.config.batch_size:
                self._flush(kind, drain=drain)
            else:
                self._arm_flush(kind)

    def _send(self, kind: QueueKind, items: list[QueuedItem], body: dict[str, Any]) -> bool:
        if self._transport is None:
            return False
        endpoint = EVENTS_ENDPOINT if kind is QueueKind.EVENTS else SNAPSHOTS_ENDPOINT
        try:
            return bool(self._transport.send(endpoint, body))
        except Exception:
            logger.exception("transport raised while sending %d %s", len(items), kind.value)
            return False

    # -- session ---------------------------------------------------------

    def check_session_timeout(self) -> Session | None:
        """End the session if it has been idle past `session_timeout`."""
        with self._lock:
            now = self._scheduler.now()
            if not self._sessions.expired(to_ms(now)):
                return None
            session = self._sessions.current
            if session is None:
                return None
            self._enqueue_event(
                session,
                LifecycleEvent.SESSION_END.value,
                {"duration": session.duration_ms(to_ms(now))},
                now,
            )
            self.flush_all()
            return self._sessions.end(to_ms(now))

    # -- page hooks ------------------------------------------------------

    def handle_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self.track(LifecycleEvent.PAGE_HIDDEN.value)
            self.flush_snapshots()
        else:
            self.track(LifecycleEvent.PAGE_VISIBLE.value)

    def handle_unload(self) -> None:
        """Final best-effort send of everything not yet delivered. Nothing is requeued.

        Batches already taken for a delivery that has not completed are sent
        first, ahead of what is still queued.
        """
        if not self.enabled or self._closed:
            return
        with self._lock:
            now = self._scheduler.now()
            session = self._sessions.current
            if session is not None:
                self._enqueue_event(session, LifecycleEvent.PAGE_UNLOAD.value, None, now)
            outgoing: list[tuple[QueueKind, list[QueuedItem], dict[str, Any] | None]] = []
            for kind in QueueKind:
                taken = [item for items in self._inflight[kind] or [] for item in items]
                self._inflight[kind] = None
                for group in _group_by_session(taken + self._queues[kind].drain()):
                    outgoing.append((kind, group, self._build_body(kind, group)))
        try:
            for kind, group, body in outgoing:
                if body is None or self._transport is None:
                    continue
                endpoint = EVENTS_ENDPOINT if kind is QueueKind.EVENTS else SNAPSHOTS_ENDPOINT
                if not self._transport.beacon(endpoint, body):
                    logger.warning("lost %d %s on unload", len(group), kind.value)
        finally:
            self.close()


def _group_by_session(items: list[QueuedItem]) -> list[list[QueuedItem]]:
    groups: list[list[QueuedItem]] = []
    for item in items:
        if groups and groups[-1][0].session_id == item.session_id:
            groups[-1].append(item)
        else:
            groups.append([item])
    return groups
