from __future__ import annotations

"""Checkpoint rule engine.

The engine decides, per TODO item, whether execution has to stop for a human
checkpoint. Rules are pure predicates; evaluation has no side effects.

Ordering
--------

User rules are evaluated first (highest ``priority`` first), then the rules
of the active preset (highest ``priority`` first). The first enabled rule
whose trigger matches wins. When nothing matches the decision falls back to
``require_confirm``.

Presets
-------

- ``step``: every item requires confirmation.
- ``smart``: destructive actions and planner-flagged items require
  confirmation, read-only items pass, creates and updates are decided by the
  smart context score.
- ``auto``: everything passes except deletes and irreversible operations.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from ..core.errors import InputValidationError
from ..schemas.domain import (
    Checkpoint,
    CheckpointOption,
    CheckpointType,
    CollaborationMode,
    OperationType,
    ResourceRef,
    RiskLevel,
    StateAction,
    TodoCategory,
    TodoItem,
    _utc_now,
)
from .models import (
    CheckpointAction,
    CheckpointDecision,
    CheckpointRule,
    RulePreset,
    RuleTrigger,
    SmartContext,
)

logger = logging.getLogger(__name__)

MODE_PRESETS: Dict[CollaborationMode, RulePreset] = {
    CollaborationMode.manual: RulePreset.step,
    CollaborationMode.assisted: RulePreset.smart,
    CollaborationMode.auto: RulePreset.auto,
}

_LOW_RISK_CATEGORIES = frozenset({TodoCategory.access, TodoCategory.observation, TodoCategory.verify})


def _rule(
    id: str,
    name: str,
    action: CheckpointAction,
    priority: int,
    *,
    smart: bool = False,
    description: Optional[str] = None,
    **trigger: Any,
) -> CheckpointRule:
    return CheckpointRule(
        id=id,
        name=name,
        description=description,
        trigger=RuleTrigger(**trigger),
        action=action,
        priority=priority,
        smart=smart,
    )


STEP_RULES: Tuple[CheckpointRule, ...] = (
    _rule(
        "step-confirm-all",
        "Step mode: confirm every item",
        CheckpointAction.require_confirm,
        200,
    ),
)

SMART_RULES: Tuple[CheckpointRule, ...] = (
    _rule(
        "delete-must-confirm",
        "Deletes require confirmation",
        CheckpointAction.require_detailed_confirm,
        100,
        description="Deleting is irreversible",
        actions=[StateAction.delete.value],
    ),
    _rule(
        "planner-flagged-confirm",
        "Planner flagged this step",
        CheckpointAction.require_confirm,
        95,
        planner_flagged=True,
    ),
    _rule(
        "task-execute-confirm",
        "Running tasks requires confirmation",
        CheckpointAction.require_confirm,
        90,
        description="Running a test task consumes resources",
        resource_types=["task"],
        actions=[StateAction.create.value, "execute", "run"],
    ),
    _rule(
        "evaluator-create-confirm",
        "Creating evaluators requires confirmation",
        CheckpointAction.require_confirm,
        80,
        resource_types=["evaluator"],
        actions=[StateAction.create.value],
    ),
    _rule(
        "read-only-auto-pass",
        "Read-only steps pass automatically",
        CheckpointAction.auto_pass,
        50,
        categories=[TodoCategory.access, TodoCategory.observation, TodoCategory.verify],
    ),
    _rule(
        "update-smart",
        "Updates are decided from context",
        CheckpointAction.require_confirm,
        40,
        smart=True,
        actions=[StateAction.update.value],
    ),
    _rule(
        "create-smart",
        "Creates are decided from context",
        CheckpointAction.require_confirm,
        30,
        smart=True,
        actions=[StateAction.create.value],
    ),
)

AUTO_RULES: Tuple[CheckpointRule, ...] = (
    _rule(
        "auto-delete-confirm",
        "Auto mode: deletes still require confirmation",
        CheckpointAction.require_detailed_confirm,
        200,
        actions=[StateAction.delete.value],
    ),
    _rule(
        "auto-irreversible-confirm",
        "Auto mode: irreversible operations require confirmation",
        CheckpointAction.require_confirm,
        190,
        irreversible=True,
    ),
    _rule(
        "auto-pass-all",
        "Auto mode: everything else passes",
        CheckpointAction.auto_pass,
        100,
    ),
)

PRESET_RULES: Dict[RulePreset, Tuple[CheckpointRule, ...]] = {
    RulePreset.step: STEP_RULES,
    RulePreset.smart: SMART_RULES,
    RulePreset.auto: AUTO_RULES,
}


def preset_for(mode_or_preset: Union[RulePreset, CollaborationMode, str]) -> RulePreset:
    """Resolve a preset name or collaboration mode to a ``RulePreset``."""
    if isinstance(mode_or_preset, RulePreset):
        return mode_or_preset
    if isinstance(mode_or_preset, CollaborationMode):
        return MODE_PRESETS[mode_or_preset]
    value = str(mode_or_preset)
    for preset in RulePreset:
        if preset.value == value:
            return preset
    for mode in CollaborationMode:
        if mode.value == value:
            return MODE_PRESETS[mode]
    raise InputValidationError("mode", f"unknown mode or preset '{value}'")


def _is_delete(item: TodoItem) -> bool:
    op = item.operation
    return op.type == OperationType.state and op.action == StateAction.delete.value


def calculate_risk(item: TodoItem) -> RiskLevel:
    if _is_delete(item) or item.operation.irreversible:
        return RiskLevel.high
    if item.category in _LOW_RISK_CATEGORIES:
        return RiskLevel.low
    return RiskLevel.medium


def trigger_matches(trigger: RuleTrigger, item: TodoItem) -> bool:
    op = item.operation
    if trigger.categories and item.category not in trigger.categories:
        return False
    if trigger.actions and op.action not in trigger.actions:
        return False
    if trigger.resource_types and op.resource_type not in trigger.resource_types:
        return False
    if trigger.risk_levels and calculate_risk(item) not in trigger.risk_levels:
        return False
    if trigger.resource_id_pattern is not None:
        if not op.resource_id or re.search(trigger.resource_id_pattern, op.resource_id) is None:
            return False
    if trigger.planner_flagged is not None and item.checkpoint.required != trigger.planner_flagged:
        return False
    if trigger.irreversible is not None and op.irreversible != trigger.irreversible:
        return False
    return True


def smart_score(item: TodoItem, context: SmartContext) -> Tuple[int, int]:
    """Return ``(pass_weight, confirm_weight)`` for a smart rule."""
    skip = 0
    require = 0
    if context.operation_count > 10:
        skip += 2
    if context.recent_failures > 0:
        require += 3
    if context.importance == RiskLevel.high:
        require += 3
    if context.resource_is_new:
        skip += 1
    if context.impact_scope is not None and context.impact_scope > 10:
        require += 2
    if item.operation.action in (StateAction.update.value, StateAction.create.value):
        skip += 1
    return skip, require


def _sorted(rules: Iterable[CheckpointRule]) -> List[CheckpointRule]:
    return sorted(rules, key=lambda r: r.priority, reverse=True)


class CheckpointRuleEngine:
    """Prioritized, swappable rule set deciding when a human must confirm."""

    def __init__(
        self,
        preset: Union[RulePreset, CollaborationMode, str] = RulePreset.smart,
        user_rules: Sequence[Union[CheckpointRule, Mapping[str, Any]]] = (),
    ) -> None:
        self._preset = preset_for(preset)
        self._preset_rules: Tuple[CheckpointRule, ...] = tuple(_sorted(PRESET_RULES[self._preset]))
        self._user_rules: Dict[str, CheckpointRule] = {}
        if user_rules:
            self.add_user_rules(user_rules)

    def get_active_preset(self) -> RulePreset:
        return self._preset

    def get_user_rules(self) -> List[CheckpointRule]:
        return _sorted(self._user_rules.values())

    def get_rules(self) -> List[CheckpointRule]:
        """All rules in evaluation order."""
        return self.get_user_rules() + list(self._preset_rules)

    def switch_mode_rules(self, mode: Union[RulePreset, CollaborationMode, str]) -> RulePreset:
        """Replace the active preset; user rules are kept."""
        preset = preset_for(mode)
        rules = tuple(_sorted(PRESET_RULES[preset]))
        self._preset, self._preset_rules = preset, rules
        logger.info(f"Checkpoint rules switched to preset '{preset.value}'")
        return preset

    def add_user_rules(self, rules: Iterable[Union[CheckpointRule, Mapping[str, Any]]]) -> List[CheckpointRule]:
        """Validate and add rules; an existing id is replaced in place.

        Nothing is applied unless every rule validates.
        """
        parsed: List[CheckpointRule] = []
        for idx, raw in enumerate(rules):
            if isinstance(raw, CheckpointRule):
                parsed.append(raw)
                continue
            if not isinstance(raw, Mapping):
                raise InputValidationError(f"rules[{idx}]", "expected a rule object")
            try:
                parsed.append(CheckpointRule.model_validate(dict(raw)))
            except ValidationError as e:
                missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                raise InputValidationError(f"rules[{idx}]", f"invalid rule ({missing})") from e

        for rule in parsed:
            self._user_rules[rule.id] = rule
        logger.info(f"Added {len(parsed)} user checkpoint rule(s); {len(self._user_rules)} active")
        return parsed

    def remove_user_rule(self, rule_id: str) -> bool:
        return self._user_rules.pop(rule_id, None) is not None

    def clear_user_rules(self) -> None:
        self._user_rules.clear()

    def reset(self) -> None:
        self.clear_user_rules()
        self.switch_mode_rules(RulePreset.smart)

    def match_rule(self, item: TodoItem) -> Optional[CheckpointRule]:
        for rule in self.get_rules():
            if rule.enabled and trigger_matches(rule.trigger, item):
                return rule
        return None

    def evaluate(self, item: TodoItem, context: Optional[SmartContext] = None) -> CheckpointDecision:
        risk = calculate_risk(item)
        rule = self.match_rule(item)
        if rule is None:
            return CheckpointDecision(
                action=CheckpointAction.require_confirm,
                risk=risk,
                reason="No rule matched; confirmation required",
            )

        action = rule.action
        reason = rule.name
        if rule.smart and action == CheckpointAction.require_confirm and context is not None:
            skip, require = smart_score(item, context)
            if skip > require:
                action = CheckpointAction.auto_pass
                reason = f"{rule.name} (context allows auto pass)"
            else:
                reason = f"{rule.name} (context suggests confirmation)"

        logger.debug(f"Rule '{rule.id}' matched item '{item.id}': {action.value}")
        return CheckpointDecision(action=action, risk=risk, rule_id=rule.id, rule_name=rule.name, reason=reason)

    def requires_checkpoint(self, item: TodoItem, context: Optional[SmartContext] = None) -> bool:
        return self.evaluate(item, context).required


def default_options(item: TodoItem) -> List[CheckpointOption]:
    return [
        CheckpointOption(id="approve", label="Approve", description="Continue as planned", is_default=True),
        CheckpointOption(id="modify", label="Modify", description="Pick another option"),
        CheckpointOption(id="takeover", label="Take over", description="Pause the AI and do this step manually"),
        CheckpointOption(id="reject", label="Reject", description=f"Skip '{item.title}'"),
    ]


def candidate_options(candidates: Sequence[ResourceRef]) -> List[CheckpointOption]:
    options = [
        CheckpointOption(
            id=c.id,
            label=c.name,
            description=f"{c.type} ({round((c.score or 0.0) * 100)}% match)" if c.score is not None else c.type,
            is_default=i == 0,
        )
        for i, c in enumerate(candidates)
    ]
    options.append(CheckpointOption(id="reject", label="Reject", description="None of these"))
    return options


def checkpoint_id(item: TodoItem, opened_at: datetime) -> str:
    return f"{item.id}:{int(opened_at.timestamp() * 1000)}"


def build_checkpoint(item: TodoItem, reason: Optional[str] = None) -> Checkpoint:
    """Materialize the checkpoint view of a waiting item."""
    cfg = item.checkpoint
    opened_at = cfg.opened_at or _utc_now()
    if cfg.options:
        options = list(cfg.options)
    elif cfg.type == CheckpointType.resource_selection:
        options = candidate_options(cfg.candidates)
    else:
        options = default_options(item)
    return Checkpoint(
        id=checkpoint_id(item, opened_at),
        todo_item=item.model_copy(deep=True),
        type=cfg.type,
        reason=reason or cfg.message or item.title,
        options=options,
        candidates=list(cfg.candidates),
        created_at=opened_at,
    )
