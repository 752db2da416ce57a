from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema, ExternalSchema
from .domain import ResourceRef, SelectedResource


class IntentCategory(str, Enum):
    navigation = "navigation"
    creation = "creation"
    modification = "modification"
    deletion = "deletion"
    query = "query"
    execution = "execution"
    comparison = "comparison"
    export = "export"
    clarification = "clarification"
    unknown = "unknown"


class EntityType(str, Enum):
    resource_type = "resource_type"
    resource_name = "resource_name"
    action = "action"
    parameter = "parameter"


class ResourceType(str, Enum):
    prompt = "prompt"
    dataset = "dataset"
    model = "model"
    provider = "provider"
    evaluator = "evaluator"
    task = "task"
    scheduled_task = "scheduled_task"
    alert_rule = "alert_rule"
    notify_channel = "notify_channel"
    schema = "schema"
    input_schema = "input_schema"
    output_schema = "output_schema"
    dashboard = "dashboard"
    settings = "settings"
    monitor = "monitor"


class ConfidenceAction(str, Enum):
    reject = "reject"
    clarify = "clarify"
    confirm = "confirm"
    auto_execute = "auto_execute"


class ClarificationType(str, Enum):
    select_resource = "select_resource"
    disambiguate = "disambiguate"
    provide_parameter = "provide_parameter"
    confirm_action = "confirm_action"
    general = "general"


class EntityMatch(BaseSchema):
    type: EntityType
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    candidates: List[ResourceRef] = Field(default_factory=list)
    start: Optional[int] = None
    end: Optional[int] = None


class IntentContext(ExternalSchema):
    """What the human is currently looking at, used for context bonuses."""

    current_page: Optional[str] = None
    selected_resource: Optional[SelectedResource] = None
    recent_actions: List[str] = Field(default_factory=list)
    user_patterns: List[str] = Field(default_factory=list)


class ParsedIntent(BaseSchema):
    category: IntentCategory
    confidence: float = Field(ge=0.0, le=1.0)
    raw_text: str

    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    action: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    entities: List[EntityMatch] = Field(default_factory=list)

    clarification_question: Optional[str] = None
    clarification_options: List[str] = Field(default_factory=list)


class IntentParseResult(BaseSchema):
    success: bool
    intent: Optional[ParsedIntent] = None
    method: Literal["rule", "llm", "fallback"] = "rule"
    error: Optional[str] = None
    processing_ms: float = 0.0


class ConfidenceResult(BaseSchema):
    score: float
    action: ConfidenceAction
    factors: Dict[str, float] = Field(default_factory=dict)
    missing: List[EntityType] = Field(default_factory=list)
    ambiguous: bool = False
    risk: float = 0.0
    reason: str = ""


class ClarificationOption(BaseSchema):
    id: str
    label: str
    value: str
    description: Optional[str] = None


class ClarificationRequest(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: ClarificationType
    question: str
    options: List[ClarificationOption] = Field(default_factory=list)
    parameter_name: Optional[str] = None
    allow_free_text: bool = True


class ClarificationResponse(ExternalSchema):
    request_id: Optional[str] = None
    selected_option_id: Optional[str] = None
    value: Optional[str] = None
    confirmed: Optional[bool] = None
    cancelled: bool = False


class ClarificationState(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: ClarificationType
    rounds: int = 0
    max_rounds: int = 3
    pending: Optional[ClarificationRequest] = None
    intent: ParsedIntent
    history: List[ClarificationResponse] = Field(default_factory=list)
