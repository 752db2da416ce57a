"""Checkpoint rules: when must a TODO item stop for a human."""

from .models import (
    CheckpointAction,
    CheckpointDecision,
    CheckpointRule,
    RulePreset,
    RuleTrigger,
    SmartContext,
)
from .rules import (
    MODE_PRESETS,
    CheckpointRuleEngine,
    build_checkpoint,
    calculate_risk,
    default_options,
    preset_for,
)

__all__ = [
    "MODE_PRESETS",
    "CheckpointAction",
    "CheckpointDecision",
    "CheckpointRule",
    "CheckpointRuleEngine",
    "RulePreset",
    "RuleTrigger",
    "SmartContext",
    "build_checkpoint",
    "calculate_risk",
    "default_options",
    "preset_for",
]
