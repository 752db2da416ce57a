from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator

from ..schemas.base import BaseSchema, ExternalSchema
from ..schemas.domain import RiskLevel, TodoCategory, _utc_now


class CheckpointAction(str, Enum):
    """
    Outcome of a rule match.

    Attributes:
        auto_pass: Execute the item without asking.
        require_confirm: Open a checkpoint and wait for approval.
        require_detailed_confirm: Open a checkpoint that shows the full operation
            (destructive or irreversible actions).
    """

    auto_pass = "auto_pass"
    require_confirm = "require_confirm"
    require_detailed_confirm = "require_detailed_confirm"


class RulePreset(str, Enum):
    step = "step"
    smart = "smart"
    auto = "auto"


class RuleTrigger(BaseSchema):
    """
    Pattern over the action, resource and risk a TODO item describes.

    Every populated field must match; an empty trigger matches every item.
    """

    categories: List[TodoCategory] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    resource_types: List[str] = Field(default_factory=list)
    risk_levels: List[RiskLevel] = Field(default_factory=list)
    resource_id_pattern: Optional[str] = None
    planner_flagged: Optional[bool] = None
    irreversible: Optional[bool] = None

    @field_validator("resource_id_pattern")
    @classmethod
    def _compiles(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid regular expression: {e}") from e
        return v


class CheckpointRule(BaseSchema):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    trigger: RuleTrigger
    action: CheckpointAction
    priority: int = 0
    enabled: bool = True
    smart: bool = Field(
        default=False,
        description="When set, a require_confirm outcome may be relaxed by the smart context score.",
    )
    created_at: datetime = Field(default_factory=_utc_now)


class SmartContext(ExternalSchema):
    """Context used to relax ``smart`` rules; all fields are optional hints."""

    operation_count: int = 0
    recent_failures: int = 0
    resource_is_new: bool = False
    importance: Optional[RiskLevel] = None
    impact_scope: Optional[int] = None


class CheckpointDecision(BaseSchema):
    action: CheckpointAction
    risk: RiskLevel
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    reason: str = ""

    @property
    def required(self) -> bool:
        return self.action != CheckpointAction.auto_pass
