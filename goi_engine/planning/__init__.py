"""Planning: turn a goal into a validated TODO list."""

from .models import PlanContext, PlanItem, PlanOperation, PlanOutput, PlanResult, TokenUsage
from .planner import Planner, TodoPlanner, build_todo_list, template_plan, validate_plan

__all__ = [
    "PlanContext",
    "PlanItem",
    "PlanOperation",
    "PlanOutput",
    "PlanResult",
    "Planner",
    "TodoPlanner",
    "TokenUsage",
    "build_todo_list",
    "template_plan",
    "validate_plan",
]
