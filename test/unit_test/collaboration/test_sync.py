from __future__ import annotations

from typing import List

import pytest

from goi_engine.collaboration.sync import ALL_SESSIONS, EventBus, InMemoryEventSink, StateSync
from goi_engine.schemas.domain import AgentLoopStatus, GoiEvent, GoiEventType, SelectedResource


class _BrokenSink:
    def append(self, event: GoiEvent) -> None:
        raise RuntimeError("disk full")


def test_publish_reaches_session_and_wildcard_subscribers() -> None:
    bus = EventBus()
    mine: List[GoiEvent] = []
    everything: List[GoiEvent] = []
    other: List[GoiEvent] = []
    bus.subscribe("s1", mine.append)
    bus.subscribe(ALL_SESSIONS, everything.append)
    bus.subscribe("s2", other.append)

    bus.emit("s1", GoiEventType.item_started, {"item_id": "i1"})

    assert [e.payload["item_id"] for e in mine] == ["i1"]
    assert len(everything) == 1
    assert other == []


def test_failing_subscriber_and_sink_never_raise() -> None:
    bus = EventBus(sink=_BrokenSink())
    received: List[GoiEvent] = []

    def _boom(event: GoiEvent) -> None:
        raise ValueError("subscriber bug")

    bus.subscribe("s1", _boom)
    bus.subscribe("s1", received.append)

    bus.emit("s1", GoiEventType.item_completed)

    assert len(received) == 1


def test_closed_subscription_stops_delivery() -> None:
    bus = EventBus()
    received: List[GoiEvent] = []
    sub = bus.subscribe("s1", received.append)

    sub.close()
    sub.close()
    bus.emit("s1", GoiEventType.item_completed)

    assert received == []
    assert bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_queue_subscription_drops_when_full() -> None:
    bus = EventBus()
    sub = bus.subscribe_queue("s1", maxsize=1)

    bus.emit("s1", GoiEventType.item_started)
    bus.emit("s1", GoiEventType.item_completed)

    assert sub.queue is not None
    event = await sub.queue.get()
    assert event.type == GoiEventType.item_started
    assert sub.queue.empty()
    assert bus.dropped == 1


def test_sink_receives_every_event() -> None:
    sink = InMemoryEventSink()
    bus = EventBus(sink=sink)

    bus.emit("s1", GoiEventType.item_started)
    bus.emit("s2", GoiEventType.item_started)

    assert [e.session_id for e in sink.events] == ["s1", "s2"]


class TestStateSync:
    def test_projects_plan_and_status(self) -> None:
        bus = EventBus()
        sync = StateSync("s1", bus)

        bus.emit("s1", GoiEventType.todo_planned, {"goal": "create a prompt", "total": 3})
        bus.emit("s1", GoiEventType.status_changed, {"from": "planning", "to": "executing"})

        u = sync.snapshot()
        assert u.current_goal == "create a prompt"
        assert u.current_phase == AgentLoopStatus.executing
        assert "3 step(s)" in u.summary

    def test_completed_items_select_their_resource(self) -> None:
        bus = EventBus()
        sync = StateSync("s1", bus)

        bus.emit("s1", GoiEventType.item_completed, {"title": "Create prompt", "resource_id": "p1", "resource_type": "prompt"})
        bus.emit("s1", GoiEventType.item_completed, {"title": "Open prompt", "resource_id": "p1", "resource_type": "prompt"})

        u = sync.snapshot()
        assert [r.id for r in u.selected_resources] == ["p1"]
        assert u.summary == "Completed: Open prompt"

    def test_ignores_other_sessions(self) -> None:
        bus = EventBus()
        sync = StateSync("s1", bus)

        bus.emit("s2", GoiEventType.todo_planned, {"goal": "other"})

        assert sync.snapshot().current_goal is None

    def test_publishes_understanding_updates(self) -> None:
        bus = EventBus()
        updates: List[GoiEvent] = []
        bus.subscribe("s1", lambda e: updates.append(e) if e.type == GoiEventType.understanding_updated else None)
        sync = StateSync("s1", bus)

        sync.set_confidence(1.7)
        sync.select_resource(SelectedResource(id="d1", type="dataset"))

        assert sync.snapshot().confidence == 1.0
        assert len(updates) == 2

    def test_snapshot_is_a_copy(self) -> None:
        bus = EventBus()
        sync = StateSync("s1", bus)
        sync.select_resource(SelectedResource(id="d1", type="dataset"))

        snap = sync.snapshot()
        snap.selected_resources.clear()

        assert len(sync.snapshot().selected_resources) == 1

    def test_close_and_reset(self) -> None:
        bus = EventBus()
        sync = StateSync("s1", bus)
        bus.emit("s1", GoiEventType.todo_planned, {"goal": "g", "total": 1})

        sync.reset()
        sync.close()
        bus.emit("s1", GoiEventType.todo_planned, {"goal": "later", "total": 1})

        assert sync.snapshot().current_goal is None
        assert bus.subscriber_count("s1") == 0
