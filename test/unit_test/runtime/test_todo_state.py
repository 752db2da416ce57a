from __future__ import annotations

import pytest

from goi_engine.core.errors import StateConflictError
from goi_engine.runtime.todo_state import ALLOWED_TRANSITIONS, can_transition, transition
from goi_engine.schemas.domain import (
    TERMINAL_ITEM_STATUSES,
    GoiOperation,
    OperationType,
    TodoItem,
    TodoItemStatus,
    TodoList,
)


def _item(title: str = "Open page") -> TodoItem:
    return TodoItem(title=title, operation=GoiOperation(type=OperationType.access, action="navigate"))


def test_terminal_statuses_have_no_way_out() -> None:
    for status in TERMINAL_ITEM_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize(
    "current,to,allowed",
    [
        (TodoItemStatus.pending, TodoItemStatus.in_progress, True),
        (TodoItemStatus.pending, TodoItemStatus.waiting, True),
        (TodoItemStatus.pending, TodoItemStatus.completed, False),
        (TodoItemStatus.waiting, TodoItemStatus.skipped, True),
        (TodoItemStatus.in_progress, TodoItemStatus.skipped, False),
        (TodoItemStatus.completed, TodoItemStatus.pending, False),
    ],
)
def test_can_transition(current: TodoItemStatus, to: TodoItemStatus, allowed: bool) -> None:
    assert can_transition(current, to) is allowed


def test_transition_sets_timestamps() -> None:
    item = _item()

    transition(item, TodoItemStatus.in_progress)
    assert item.started_at is not None
    assert item.completed_at is None

    transition(item, TodoItemStatus.completed)
    assert item.status == TodoItemStatus.completed
    assert item.completed_at is not None


def test_illegal_transition_raises_and_keeps_status() -> None:
    item = _item()

    with pytest.raises(StateConflictError) as exc:
        transition(item, TodoItemStatus.completed, loop_status="waiting")

    assert exc.value.item_status == "pending"
    assert exc.value.current_status == "waiting"
    assert item.status == TodoItemStatus.pending


def test_only_one_active_item_per_list() -> None:
    first, second = _item("first"), _item("second")
    todo = TodoList(session_id="s1", goal="g", items=[first, second])
    transition(first, TodoItemStatus.waiting, todo_list=todo)

    with pytest.raises(StateConflictError) as exc:
        transition(second, TodoItemStatus.in_progress, todo_list=todo)

    assert first.id in exc.value.message
    assert second.status == TodoItemStatus.pending


def test_waiting_item_may_resume() -> None:
    item = _item()
    todo = TodoList(session_id="s1", goal="g", items=[item])
    transition(item, TodoItemStatus.waiting, todo_list=todo)

    transition(item, TodoItemStatus.in_progress, todo_list=todo)

    assert item.status == TodoItemStatus.in_progress
