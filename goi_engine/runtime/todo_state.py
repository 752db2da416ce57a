"""TODO item status transitions.

Status changes are the only mutation a ``TodoItem`` receives once planned.
``transition`` applies a change after checking it against
``ALLOWED_TRANSITIONS`` and, when the owning list is given, against the
single-active-item rule: at most one item of a list is ``in_progress`` or
``waiting`` at any time.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from ..core.errors import StateConflictError
from ..schemas.domain import (
    ACTIVE_ITEM_STATUSES,
    TERMINAL_ITEM_STATUSES,
    TodoItem,
    TodoItemStatus,
    TodoList,
    _utc_now,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[TodoItemStatus, FrozenSet[TodoItemStatus]] = {
    TodoItemStatus.pending: frozenset({TodoItemStatus.in_progress, TodoItemStatus.waiting, TodoItemStatus.skipped}),
    TodoItemStatus.in_progress: frozenset({TodoItemStatus.waiting, TodoItemStatus.completed, TodoItemStatus.failed}),
    TodoItemStatus.waiting: frozenset({TodoItemStatus.in_progress, TodoItemStatus.completed, TodoItemStatus.skipped}),
    TodoItemStatus.completed: frozenset(),
    TodoItemStatus.failed: frozenset(),
    TodoItemStatus.skipped: frozenset(),
}


def can_transition(current: TodoItemStatus, to: TodoItemStatus) -> bool:
    return to in ALLOWED_TRANSITIONS[current]


def transition(
    item: TodoItem,
    to: TodoItemStatus,
    *,
    todo_list: Optional[TodoList] = None,
    loop_status: str = "executing",
) -> TodoItem:
    """Move ``item`` to ``to`` in place and return it.

    Raises:
        StateConflictError: the transition is not allowed, or it would open a
            second active item in ``todo_list``.
    """
    current = item.status
    if not can_transition(current, to):
        raise StateConflictError(
            f"move item '{item.id}' to {to.value}",
            loop_status,
            item_status=current.value,
        )

    if todo_list is not None and to in ACTIVE_ITEM_STATUSES and current not in ACTIVE_ITEM_STATUSES:
        others = [i for i in todo_list.active_items() if i.id != item.id]
        if others:
            raise StateConflictError(
                f"move item '{item.id}' to {to.value}",
                loop_status,
                item_status=current.value,
                detail=f"item '{others[0].id}' is still {others[0].status.value}",
            )

    now = _utc_now()
    item.status = to
    item.updated_at = now
    if to == TodoItemStatus.in_progress and item.started_at is None:
        item.started_at = now
    if to in TERMINAL_ITEM_STATUSES:
        item.completed_at = now
    if todo_list is not None:
        todo_list.updated_at = now

    logger.debug(f"Item '{item.id}' {current.value} -> {to.value}")
    return item
