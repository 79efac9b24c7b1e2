from __future__ import annotations

import logging
from typing import Any, Callable

import pytest

from replaytrace.decoder import decode_snapshot
from replaytrace.engine import CaptureEngine, serialize_snapshots
from replaytrace.scheduler import ManualScheduler
from replaytrace.transport import EVENTS_ENDPOINT, SNAPSHOTS_ENDPOINT

from conftest import RecordingTransport

EngineFactory = Callable[..., CaptureEngine]


def _types(body: dict[str, Any]) -> list[str]:
    return [event["type"] for event in body["events"]]


def test_two_clicks_at_batch_size_two_flush_once(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=2)

    engine.track("click", {"x": 10, "y": 20})
    scheduler.run_pending()
    assert transport.delivered == []

    engine.track("click", {"x": 10, "y": 20})
    scheduler.run_pending()
    scheduler.advance(60)

    assert len(transport.delivered) == 1
    endpoint, body = transport.delivered[0]
    assert endpoint == EVENTS_ENDPOINT
    assert _types(body) == ["session_start", "click", "click"]
    for event in body["events"][1:]:
        assert event["data"] == {
            "x": 10,
            "y": 20,
            "url": "https://shop.example/cart?step=2",
            "path": "/cart",
            "title": "Cart",
        }
    assert body["sdk_key"] == "sdk_test"
    assert body["session_id"] == engine.session.id
    assert body["device_info"]["user_agent"] == "pytest"


def test_first_event_starts_a_session(make_engine: EngineFactory) -> None:
    engine = make_engine()
    assert engine.session is None

    engine.track("click")

    assert engine.session is not None
    assert [event["type"] for event in engine.pending_events] == ["session_start", "click"]


def test_missing_key_disables_tracking(
    transport: RecordingTransport, scheduler: ManualScheduler, caplog: pytest.LogCaptureFixture
) -> None:
    from replaytrace.config import CaptureConfig

    with caplog.at_level(logging.WARNING, logger="replaytrace.engine"):
        engine = CaptureEngine(CaptureConfig(api_url="https://collect.example"), transport=transport, scheduler=scheduler)

    engine.track("click")
    engine.capture_snapshot({"type": 3, "data": {"source": 1}})
    scheduler.advance(60)

    assert engine.enabled is False
    assert engine.pending_events == []
    assert engine.pending_snapshots == []
    assert transport.attempts == []
    assert "capture disabled" in caplog.text
    assert "sdk_key" in caplog.text


def test_idle_timer_flushes_once_for_many_events(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(flush_interval=10)
    engine.track("click")
    scheduler.advance(3)
    engine.track("scroll")
    engine.track("input")

    scheduler.advance(6.9)
    assert transport.delivered == []

    scheduler.advance(0.2)
    assert len(transport.delivered) == 1
    assert _types(transport.delivered[0][1]) == ["session_start", "click", "scroll", "input"]
    assert engine.pending_events == []


def test_zero_flush_interval_disables_timed_flush(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(flush_interval=0)
    engine.track("click")

    scheduler.advance(3600)

    assert transport.attempts == []
    assert len(engine.pending_events) == 2


def test_failed_batch_is_retried_before_newer_events(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=2)
    transport.fail = True
    engine.track("a")
    engine.track("b")
    scheduler.run_pending()

    assert len(transport.attempts) == 1
    assert [event["type"] for event in engine.pending_events] == ["session_start", "a", "b"]

    transport.fail = False
    engine.track("c")
    scheduler.run_pending()
    scheduler.advance(10)

    assert [_types(body) for _, body in transport.delivered] == [["session_start", "a", "b"], ["c"]]


def test_transport_exception_counts_as_failure(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=2)
    transport.raise_error = ConnectionError("socket closed")

    engine.track("click")
    engine.track("click")
    scheduler.run_pending()

    assert len(transport.attempts) == 1
    assert [event["type"] for event in engine.pending_events] == ["session_start", "click", "click"]


def test_overlapping_failed_flushes_keep_queue_order(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=2)
    transport.fail = True
    for name in ("a", "b", "c", "d"):
        engine.track(name)

    scheduler.run_pending()

    assert len(transport.attempts) == 1
    assert [event["type"] for event in engine.pending_events] == ["session_start", "a", "b", "c", "d"]

    transport.fail = False
    scheduler.advance(10)

    assert [_types(body) for _, body in transport.delivered] == [["session_start", "a", "b"], ["c", "d"]]
    assert engine.pending_events == []


def test_event_after_idle_timeout_starts_a_new_session_before_the_next_check(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100, flush_interval=0, session_timeout=1800, session_check_interval=60)
    engine.start()
    first = engine.session

    scheduler.advance(1830)
    engine.track("click")
    scheduler.run_pending()

    assert engine.session is not None
    assert engine.session.id != first.id
    assert len(transport.delivered) == 1
    body = transport.delivered[0][1]
    assert body["session_id"] == first.id
    assert _types(body) == ["session_start", "page_view", "session_end"]
    assert body["events"][-1]["data"]["duration"] == 1_830_000
    assert [event["type"] for event in engine.pending_events] == ["session_start", "click"]


def test_queue_never_exceeds_capacity(make_engine: EngineFactory) -> None:
    engine = make_engine(batch_size=100, flush_interval=0, max_queue_size=5)

    for index in range(10):
        engine.track(f"e{index}")

    assert [event["type"] for event in engine.pending_events] == ["e5", "e6", "e7", "e8", "e9"]


def test_idle_session_ends_and_next_event_starts_a_new_one(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100, flush_interval=0, session_timeout=60, session_check_interval=30)
    engine.start()
    first = engine.session
    assert first is not None

    scheduler.advance(100)

    assert engine.session is None
    assert len(transport.delivered) == 1
    body = transport.delivered[0][1]
    assert body["session_id"] == first.id
    assert _types(body) == ["session_start", "page_view", "session_end"]
    assert body["events"][-1]["data"]["duration"] == 90_000

    engine.track("click")

    assert engine.session is not None
    assert engine.session.id != first.id
    assert [event["type"] for event in engine.pending_events] == ["session_start", "click"]


def test_batches_keep_the_session_they_were_captured_in(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100, flush_interval=0, session_timeout=60)
    transport.fail = True
    engine.track("a")
    first_id = engine.session.id
    engine.flush_events()
    scheduler.run_pending()

    scheduler.advance(61)
    transport.fail = False
    ended = engine.check_session_timeout()
    engine.track("b")
    engine.flush_events()
    scheduler.run_pending()

    assert ended is not None and ended.id == first_id
    assert [(body["session_id"], _types(body)) for _, body in transport.delivered] == [
        (first_id, ["session_start", "a", "session_end"]),
        (engine.session.id, ["session_start", "b"]),
    ]


def test_snapshot_batches_decode_back_to_recorder_events(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    full = {"type": 2, "data": {"node": {"type": 0, "childNodes": []}}, "timestamp": 1}
    incremental = {"type": 3, "data": {"source": 1, "positions": [{"x": 1, "y": 2}]}, "timestamp": 2}
    engine.capture_snapshot(full)
    engine.capture_snapshot(incremental)

    engine.flush_snapshots()
    scheduler.run_pending()

    snapshot_bodies = [body for endpoint, body in transport.delivered if endpoint == SNAPSHOTS_ENDPOINT]
    assert len(snapshot_bodies) == 1
    body = snapshot_bodies[0]
    assert body["snapshot_count"] == 2
    assert decode_snapshot(body["snapshots"]) == [full, incremental]


def test_compressed_snapshot_batches_decode(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100, compress_snapshots=True)
    events = [{"type": 3, "data": {"source": 2, "id": i}, "timestamp": i} for i in range(20)]
    for event in events:
        engine.capture_snapshot(event)

    engine.flush_snapshots()
    scheduler.run_pending()

    body = transport.delivered[-1][1]
    assert not body["snapshots"].startswith("[")
    assert decode_snapshot(body["snapshots"]) == events


def test_empty_snapshot_records_are_not_sent(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    engine.capture_snapshot(None)
    engine.capture_snapshot({})

    engine.flush_snapshots()
    scheduler.run_pending()

    assert [endpoint for endpoint, _ in transport.attempts if endpoint == SNAPSHOTS_ENDPOINT] == []
    assert engine.pending_snapshots == []


def test_unload_drains_both_queues_through_the_beacon(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    engine.track("click")
    engine.capture_snapshot({"type": 3, "data": {"source": 1}, "timestamp": 5})

    engine.handle_unload()
    scheduler.advance(60)

    assert [endpoint for endpoint, _ in transport.beacons] == [EVENTS_ENDPOINT, SNAPSHOTS_ENDPOINT]
    assert _types(transport.beacons[0][1]) == ["session_start", "click", "page_unload"]
    assert transport.beacons[1][1]["snapshot_count"] == 1
    assert transport.attempts == []
    assert engine.pending_events == []
    assert engine.pending_snapshots == []

    engine.track("late")
    assert engine.pending_events == []


def test_unload_sends_batches_whose_delivery_has_not_run(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=2)
    engine.track("a")
    engine.track("b")
    assert engine.pending_events == []

    engine.handle_unload()
    scheduler.run_pending()

    assert [_types(body) for _, body in transport.beacons] == [["session_start", "a", "b", "page_unload"]]
    assert transport.attempts == []


def test_unload_closes_even_when_the_beacon_raises(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    engine.track("click")

    def broken_beacon(endpoint: str, body: dict[str, Any]) -> bool:
        raise ConnectionError("page gone")

    transport.beacon = broken_beacon  # type: ignore[method-assign]

    with pytest.raises(ConnectionError):
        engine.handle_unload()

    engine.track("late")
    assert engine.pending_events == []
    assert scheduler.pending == 0


def test_hidden_page_flushes_snapshots(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    engine.capture_snapshot({"type": 3, "data": {"source": 1}, "timestamp": 5})

    engine.handle_visibility_change(hidden=True)
    scheduler.run_pending()

    assert [endpoint for endpoint, _ in transport.delivered] == [SNAPSHOTS_ENDPOINT]
    assert [event["type"] for event in engine.pending_events] == ["session_start", "page_hidden"]

    engine.handle_visibility_change(hidden=False)
    assert engine.pending_events[-1]["type"] == "page_visible"


def test_navigate_and_user_properties(
    make_engine: EngineFactory, transport: RecordingTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine(batch_size=100)
    engine.identify("user-42", {"plan": "pro"})
    engine.set_user_properties({"beta": True})

    engine.navigate("https://shop.example/checkout", title="Checkout")
    engine.flush_events()
    scheduler.run_pending()

    body = transport.delivered[0][1]
    assert body["user_properties"] == {"plan": "pro", "user_id": "user-42", "beta": True}
    page_view = body["events"][-1]
    assert page_view["type"] == "page_view"
    assert page_view["data"]["path"] == "/checkout"
    assert page_view["data"]["title"] == "Checkout"


def test_serialize_snapshots_falls_back_for_circular_payloads() -> None:
    payload: dict[str, Any] = {"type": 3}
    payload["self"] = payload
    records = [{"type": "snapshot", "timestamp": 7, "data": payload}]

    text = serialize_snapshots(records)

    assert text == '[{"type": "snapshot", "timestamp": 7}]'
