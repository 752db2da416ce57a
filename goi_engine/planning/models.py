from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field

from ..schemas.base import BaseSchema, ExternalSchema
from ..schemas.domain import CheckpointType, OperationType, SelectedResource, TodoCategory


class PlanContext(ExternalSchema):
    current_page: Optional[str] = Field(default=None, alias="currentPage")
    selected_resources: List[SelectedResource] = Field(default_factory=list, alias="selectedResources")
    recent_resources: List[SelectedResource] = Field(default_factory=list, alias="recentResources")
    system_summary: Optional[str] = Field(default=None, alias="systemSummary")
    user_preferences: Dict[str, Any] = Field(default_factory=dict, alias="userPreferences")


class PlanOperation(ExternalSchema):
    type: OperationType
    action: str = ""
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    args: Dict[str, Any] = Field(default_factory=dict)
    irreversible: bool = False


class PlanCheckpoint(ExternalSchema):
    required: bool = False
    type: CheckpointType = CheckpointType.confirmation
    message: Optional[str] = None


class PlanItem(ExternalSchema):
    """One step as emitted by a planner; ``id`` is local to the plan ("1", "2", ...)."""

    id: str
    title: str
    description: str = ""
    category: TodoCategory
    operation: PlanOperation = Field(alias="goiOperation")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    checkpoint: PlanCheckpoint = Field(default_factory=PlanCheckpoint)


class PlanOutput(ExternalSchema):
    goal_analysis: str = Field(default="", alias="goalAnalysis")
    items: List[PlanItem] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TokenUsage(BaseSchema):
    input: int = 0
    output: int = 0
    total: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> "TokenUsage":
        i = self.input + input_tokens
        o = self.output + output_tokens
        return TokenUsage(input=i, output=o, total=i + o)


class PlanResult(BaseSchema):
    success: bool
    output: Optional[PlanOutput] = None
    error: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0
