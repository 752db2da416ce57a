from __future__ import annotations

"""Event bus and shared-understanding projection.

``EventBus`` is a best-effort, in-process publish/subscribe channel:

- ``publish`` never raises and never blocks; a failing subscriber or sink is
  logged and skipped.
- Subscribers register per session, either as a callback or as a bounded
  ``asyncio.Queue``. A full queue drops the event (at-most-once delivery).
- ``Subscription.close()`` unregisters.

``StateSync`` subscribes to one session and keeps an ``Understanding``
snapshot (goal, phase, selected resources, confidence) up to date. It is a
projection of the agent loop state, never a source of truth.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..schemas.domain import (
    AgentLoopStatus,
    EventSource,
    GoiEvent,
    GoiEventType,
    SelectedResource,
    Understanding,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[GoiEvent], None]

ALL_SESSIONS = "*"


class EventSink(Protocol):
    """Optional durable sink receiving every published event."""

    def append(self, event: GoiEvent) -> None: ...


class Subscription:
    def __init__(self, bus: "EventBus", session_id: str, deliver: EventCallback) -> None:
        self._bus = bus
        self.session_id = session_id
        self._deliver = deliver
        self.closed = False
        self.queue: Optional[asyncio.Queue[GoiEvent]] = None

    def deliver(self, event: GoiEvent) -> None:
        self._deliver(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._unsubscribe(self)


class EventBus:
    def __init__(self, *, sink: Optional[EventSink] = None, queue_size: int = 100) -> None:
        self._subs: Dict[str, List[Subscription]] = {}
        self._sink = sink
        self._queue_size = queue_size
        self.dropped = 0

    def subscribe(self, session_id: str, callback: EventCallback) -> Subscription:
        """Register ``callback`` for a session (``"*"`` receives every session)."""
        sub = Subscription(self, session_id, callback)
        self._subs.setdefault(session_id, []).append(sub)
        return sub

    def subscribe_queue(self, session_id: str, maxsize: Optional[int] = None) -> Subscription:
        queue: asyncio.Queue[GoiEvent] = asyncio.Queue(maxsize=maxsize or self._queue_size)

        def _put(event: GoiEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning(f"Event queue full for session '{session_id}', dropped {event.type.value}")

        sub = self.subscribe(session_id, _put)
        sub.queue = queue
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.session_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subs[sub.session_id]

    def close_session(self, session_id: str) -> int:
        """Drop every subscription of a session; returns how many were removed."""
        subs = self._subs.pop(session_id, [])
        for sub in subs:
            sub.closed = True
        return len(subs)

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._subs.get(session_id, []))
        return sum(len(v) for v in self._subs.values())

    def publish(self, event: GoiEvent) -> None:
        if self._sink is not None:
            try:
                self._sink.append(event)
            except Exception as e:
                logger.error(f"Event sink failed for {event.type.value}: {e}", exc_info=True)

        targets = list(self._subs.get(event.session_id, [])) + list(self._subs.get(ALL_SESSIONS, []))
        for sub in targets:
            if sub.closed:
                continue
            try:
                sub.deliver(event)
            except Exception as e:
                logger.warning(f"Event subscriber for '{sub.session_id}' failed on {event.type.value}: {e}")

    def emit(
        self,
        session_id: str,
        event_type: GoiEventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: EventSource = EventSource.system,
    ) -> GoiEvent:
        event = GoiEvent(session_id=session_id, type=event_type, source=source, payload=payload or {})
        self.publish(event)
        return event


class InMemoryEventSink:
    """Keeps every event in a list; handy for tests and debugging."""

    def __init__(self) -> None:
        self.events: List[GoiEvent] = []

    def append(self, event: GoiEvent) -> None:
        self.events.append(event)


class StateSync:
    """Projects a session's events into an ``Understanding`` snapshot."""

    def __init__(self, session_id: str, bus: EventBus) -> None:
        self._session_id = session_id
        self._bus = bus
        self._understanding = Understanding()
        self._subscription = bus.subscribe(session_id, self._on_event)

    def snapshot(self) -> Understanding:
        return self._understanding.model_copy(deep=True)

    def close(self) -> None:
        self._subscription.close()

    def reset(self) -> None:
        self._understanding = Understanding()

    def set_page(self, page: Optional[str]) -> None:
        self._update(current_page=page)

    def select_resource(self, resource: SelectedResource) -> None:
        selected = [r for r in self._understanding.selected_resources if r.id != resource.id]
        selected.append(resource)
        self._update(selected_resources=selected)

    def set_confidence(self, confidence: float) -> None:
        self._update(confidence=max(0.0, min(1.0, confidence)))

    def _on_event(self, event: GoiEvent) -> None:
        if event.type == GoiEventType.understanding_updated:
            return
        p = event.payload
        u = self._understanding

        if event.type == GoiEventType.todo_planned:
            total = p.get("total", 0)
            self._update(
                current_goal=p.get("goal"),
                summary=f"Planned {total} step(s) for: {p.get('goal', '')}",
                confidence=p.get("confidence", 1.0),
                selected_resources=[],
            )
        elif event.type == GoiEventType.status_changed:
            to = p.get("to")
            phase = AgentLoopStatus(to) if to else u.current_phase
            summary = u.summary
            if phase == AgentLoopStatus.completed:
                summary = f"Finished: {u.current_goal or ''}".strip()
            elif phase == AgentLoopStatus.failed:
                summary = f"Failed: {p.get('reason') or u.current_goal or ''}".strip()
            self._update(current_phase=phase, summary=summary)
        elif event.type == GoiEventType.item_started:
            self._update(summary=f"Working on: {p.get('title', '')}")
        elif event.type == GoiEventType.item_completed:
            resource_id = p.get("resource_id")
            if resource_id:
                self.select_resource(
                    SelectedResource(id=str(resource_id), type=str(p.get("resource_type") or "unknown"))
                )
            self._update(summary=f"Completed: {p.get('title', '')}")
        elif event.type == GoiEventType.checkpoint_reached:
            self._update(summary=f"Waiting for confirmation: {p.get('reason', '')}")
        elif event.type == GoiEventType.item_failed:
            self._update(summary=f"Step failed: {p.get('title', '')}")

    def _update(self, **changes: Any) -> None:
        changes["updated_at"] = datetime.now(timezone.utc)
        self._understanding = self._understanding.model_copy(update=changes)
        self._bus.emit(
            self._session_id,
            GoiEventType.understanding_updated,
            {"understanding": self._understanding.model_dump(mode="json")},
        )
