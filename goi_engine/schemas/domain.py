from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class TodoItemStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    waiting = "waiting"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


TERMINAL_ITEM_STATUSES = frozenset({TodoItemStatus.completed, TodoItemStatus.failed, TodoItemStatus.skipped})
ACTIVE_ITEM_STATUSES = frozenset({TodoItemStatus.in_progress, TodoItemStatus.waiting})


class TodoCategory(str, Enum):
    access = "access"
    state = "state"
    observation = "observation"
    verify = "verify"
    compound = "compound"


class OperationType(str, Enum):
    access = "access"
    state = "state"
    observation = "observation"


class StateAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


class CheckpointType(str, Enum):
    review = "review"
    approval = "approval"
    decision = "decision"
    confirmation = "confirmation"
    resource_selection = "resource_selection"
    resource_not_found = "resource_not_found"


class AgentLoopStatus(str, Enum):
    idle = "idle"
    planning = "planning"
    executing = "executing"
    waiting = "waiting"
    completed = "completed"
    failed = "failed"


TERMINAL_LOOP_STATUSES = frozenset({AgentLoopStatus.completed, AgentLoopStatus.failed})


class CollaborationMode(str, Enum):
    manual = "manual"
    assisted = "assisted"
    auto = "auto"


class Controller(str, Enum):
    user = "user"
    ai = "ai"


class EventSource(str, Enum):
    user = "user"
    ai = "ai"
    system = "system"


class GoiEventType(str, Enum):
    status_changed = "agent.status_changed"
    todo_planned = "todo.planned"
    planning_failed = "todo.planning_failed"
    item_started = "todo.item_started"
    item_completed = "todo.item_completed"
    item_failed = "todo.item_failed"
    item_skipped = "todo.item_skipped"
    item_retried = "todo.item_retried"
    checkpoint_reached = "checkpoint.reached"
    checkpoint_approved = "checkpoint.approved"
    checkpoint_rejected = "checkpoint.rejected"
    control_transferred = "control.transferred"
    mode_changed = "control.mode_changed"
    rules_changed = "checkpoint.rules_changed"
    understanding_updated = "understanding.updated"


class ResourceRef(BaseSchema):
    """A concrete resource known to the host application."""

    id: str
    type: str
    name: str
    score: Optional[float] = None


class GoiOperation(BaseSchema):
    """The side effect a TODO item performs.

    ``action`` is one of ``create``/``update``/``delete`` for state operations,
    ``navigate``/``view``/``open`` for access and ``query``/``list`` for
    observation. ``args`` may contain ``$N.result.path`` or ``$type:name``
    references that the gatherer resolves right before execution.
    """

    type: OperationType
    action: str = ""
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    irreversible: bool = False


class CheckpointOption(BaseSchema):
    id: str
    label: str
    description: Optional[str] = None
    is_default: bool = False


class CheckpointConfig(BaseSchema):
    """Checkpoint descriptor carried by a TODO item.

    ``required`` is set by the planner to flag an item it considers sensitive;
    the agent loop fills in the remaining fields once a checkpoint actually
    opens for the item.
    """

    required: bool = False
    type: CheckpointType = CheckpointType.confirmation
    message: Optional[str] = None
    options: List[CheckpointOption] = Field(default_factory=list)
    candidates: List[ResourceRef] = Field(default_factory=list)
    rule_id: Optional[str] = None
    opened_at: Optional[datetime] = None


class TodoItem(BaseSchema):
    id: str = Field(default_factory=_new_id)
    title: str
    description: str = ""
    category: TodoCategory = TodoCategory.state
    operation: GoiOperation
    depends_on: List[str] = Field(default_factory=list)

    status: TodoItemStatus = TodoItemStatus.pending
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)

    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retry_count: int = 0
    user_feedback: Optional[str] = None
    selected_resource_id: Optional[str] = None
    skip_reason: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES


class TodoList(BaseSchema):
    id: str = Field(default_factory=_new_id)
    session_id: str
    goal: str
    goal_analysis: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    items: List[TodoItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def get_item(self, item_id: str) -> Optional[TodoItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def next_pending(self) -> Optional[TodoItem]:
        for item in self.items:
            if item.status == TodoItemStatus.pending:
                return item
        return None

    def active_items(self) -> List[TodoItem]:
        return [i for i in self.items if i.status in ACTIVE_ITEM_STATUSES]

    def is_finished(self) -> bool:
        return all(i.is_terminal for i in self.items)

    def progress(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TodoItemStatus}
        for item in self.items:
            counts[item.status.value] += 1
        counts["total"] = len(self.items)
        return counts

    def snapshot(self) -> "TodoList":
        return deepcopy(self)


class Checkpoint(BaseSchema):
    """Ephemeral view of an open checkpoint, recomputed from its TODO item."""

    id: str
    todo_item: TodoItem
    type: CheckpointType
    reason: str
    options: List[CheckpointOption] = Field(default_factory=list)
    candidates: List[ResourceRef] = Field(default_factory=list)
    created_at: datetime


class Session(BaseSchema):
    session_id: str
    user_id: Optional[str] = None
    model_id: Optional[str] = None
    mode: CollaborationMode = CollaborationMode.assisted
    max_retries: int = 3
    step_delay: float = 0.5

    created_at: datetime = Field(default_factory=_utc_now)


class GoiEvent(BaseSchema):
    id: str = Field(default_factory=_new_id)
    session_id: str

    type: GoiEventType
    source: EventSource = EventSource.system
    created_at: datetime = Field(default_factory=_utc_now)

    payload: Dict[str, Any] = Field(default_factory=dict)


class SelectedResource(BaseSchema):
    id: str
    type: str
    name: Optional[str] = None


class Understanding(BaseSchema):
    """Shared, read-mostly picture of what the AI is currently working on."""

    summary: str = ""
    current_goal: Optional[str] = None
    selected_resources: List[SelectedResource] = Field(default_factory=list)
    current_page: Optional[str] = None
    current_phase: AgentLoopStatus = AgentLoopStatus.idle
    confidence: float = 0.0
    updated_at: datetime = Field(default_factory=_utc_now)
