from __future__ import annotations

"""Agent loop configuration, dependency bundle and result types.

- ``AgentLoopConfig`` holds per-session execution settings; defaults come
  from ``goi_engine.core.config.settings``.
- ``LoopDeps`` collects the collaborators the loop needs. It is constructed
  by the session manager (or by application wiring code) and never mutated.
- ``_StepState`` is the mutable state passed between LangGraph nodes for a
  single step. It only carries ids and plain data; the ``TodoList`` itself is
  owned by the loop.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, NotRequired, Optional, Required, TypedDict

from pydantic import Field

from ..checkpoint.rules import CheckpointRuleEngine
from ..collaboration.control_transfer import ControlTransferManager
from ..collaboration.sync import EventBus
from ..core.config import settings
from ..planning.models import TokenUsage
from ..planning.planner import Planner
from ..schemas.base import BaseSchema
from ..schemas.domain import (
    AgentLoopStatus,
    Checkpoint,
    CollaborationMode,
    Controller,
    TodoItem,
    TodoList,
)
from .capabilities import CapabilityRegistry, Gatherer, ReferenceGatherer, ResultVerifier, Verifier
from .failure import FailurePolicy


class AgentLoopConfig(BaseSchema):
    session_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    model_id: Optional[str] = None
    max_retries: int = Field(default_factory=lambda: settings.max_retries, ge=0)
    step_delay: float = Field(default_factory=lambda: settings.step_delay_seconds, ge=0)
    max_step_delay: float = Field(default_factory=lambda: settings.max_step_delay_seconds, ge=0)
    action_timeout: Optional[float] = Field(default_factory=lambda: settings.action_timeout_seconds)


@dataclass(frozen=True)
class LoopDeps:
    """Dependency bundle for ``AgentLoop``.

    ``rules`` and ``control`` are per session: the control manager swaps the
    preset of exactly this rule engine when the mode changes.
    """

    planner: Planner
    capabilities: CapabilityRegistry
    rules: CheckpointRuleEngine
    control: ControlTransferManager
    events: EventBus

    gatherer: Gatherer = field(default_factory=ReferenceGatherer)
    verifier: Verifier = field(default_factory=ResultVerifier)
    failure_policy: FailurePolicy = field(default_factory=FailurePolicy)


class _StepState(TypedDict):
    """Mutable LangGraph state for a single ``step``.

    Required keys:

    - ``item_id``: the item being processed; preset when re-entering after an
      approval, otherwise chosen by the ``select`` node.
    - ``skip_gate``: one-shot flag set on approval so the item is not gated
      twice.
    - ``gate_only``: stop after the gate; used to surface the next checkpoint
      without executing anything.

    Optional keys are filled in as the step progresses.
    """

    item_id: Required[Optional[str]]
    skip_gate: Required[bool]
    gate_only: Required[bool]
    selection: NotRequired[Optional[str]]
    inputs: NotRequired[Dict[str, Any]]
    outcome: NotRequired[str]
    result: NotRequired[Optional[Dict[str, Any]]]
    error: NotRequired[Optional[str]]
    failure_type: NotRequired[Optional[str]]
    message: NotRequired[Optional[str]]


class StartResult(BaseSchema):
    success: bool
    status: AgentLoopStatus
    todo_list: Optional[TodoList] = None
    goal_analysis: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    waiting: bool = False
    checkpoint: Optional[Checkpoint] = None
    error: Optional[str] = None


class StepResult(BaseSchema):
    done: bool
    waiting: bool
    status: AgentLoopStatus
    current_item: Optional[TodoItem] = None
    checkpoint: Optional[Checkpoint] = None
    message: Optional[str] = None
    progress: Dict[str, int] = Field(default_factory=dict)


class LoopStatus(BaseSchema):
    status: AgentLoopStatus
    current_item_id: Optional[str] = None
    controller: Controller
    mode: CollaborationMode
    progress: Dict[str, int] = Field(default_factory=dict)
    todo_list_id: Optional[str] = None
    goal: Optional[str] = None
    error: Optional[str] = None
