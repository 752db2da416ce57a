from __future__ import annotations

"""Confidence evaluation for parsed intents.

``evaluate_confidence`` turns a ``ParsedIntent`` into a single score and an
action (``auto_execute``/``confirm``/``clarify``/``reject``).

Scoring
-------

- ``completeness``: fraction of the category's required entity types that are
  present (as an entity or as the corresponding intent field).
- ``entity_score``: mean, over the required types, of the best confidence
  seen for that type (``0`` when missing, ``1`` when nothing is required).
- ``base = min(intent.confidence, entity_score) * completeness``.
- ``context_bonus``: page/selection/pattern/recent-action bonuses, capped.

Adding a required entity can only raise ``completeness`` or the best
confidence of its type, so the score never decreases. Ambiguity does not
lower the score; it caps the action at ``clarify`` instead.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..schemas.intent import (
    ConfidenceAction,
    ConfidenceResult,
    EntityMatch,
    EntityType,
    IntentCategory,
    IntentContext,
    ParsedIntent,
)
from .aliases import normalize_action
from .entity_recognizer import resource_type_from_page
from .fuzzy_matcher import DISAMBIGUATION_THRESHOLD

logger = logging.getLogger(__name__)

AUTO_EXECUTE_THRESHOLD = 0.9
CONFIRM_THRESHOLD = 0.7
CLARIFY_THRESHOLD = 0.5

HIGH_RISK_THRESHOLD = 0.5
MAX_CONTEXT_BONUS = 0.2

INTENT_RISK_LEVELS: Dict[IntentCategory, float] = {
    IntentCategory.navigation: 0.1,
    IntentCategory.query: 0.1,
    IntentCategory.export: 0.2,
    IntentCategory.comparison: 0.2,
    IntentCategory.creation: 0.3,
    IntentCategory.modification: 0.4,
    IntentCategory.execution: 0.5,
    IntentCategory.deletion: 0.8,
    IntentCategory.clarification: 0.0,
    IntentCategory.unknown: 0.0,
}

REQUIRED_ENTITIES: Dict[IntentCategory, Tuple[EntityType, ...]] = {
    IntentCategory.navigation: (EntityType.resource_type,),
    IntentCategory.creation: (EntityType.resource_type,),
    IntentCategory.query: (EntityType.resource_type,),
    IntentCategory.execution: (EntityType.resource_type,),
    IntentCategory.comparison: (EntityType.resource_type,),
    IntentCategory.export: (EntityType.resource_type,),
    IntentCategory.modification: (EntityType.resource_type, EntityType.resource_name),
    IntentCategory.deletion: (EntityType.resource_type, EntityType.resource_name),
    IntentCategory.clarification: (),
    IntentCategory.unknown: (),
}

_UNDERSTOOD_CATEGORIES = frozenset(
    c for c in IntentCategory if c not in (IntentCategory.unknown, IntentCategory.clarification)
)

_ACTION_RANK = {
    ConfidenceAction.reject: 0,
    ConfidenceAction.clarify: 1,
    ConfidenceAction.confirm: 2,
    ConfidenceAction.auto_execute: 3,
}


def action_rank(action: ConfidenceAction) -> int:
    return _ACTION_RANK[action]


def cap_action(action: ConfidenceAction, ceiling: ConfidenceAction) -> ConfidenceAction:
    """Return ``action`` lowered to ``ceiling`` if it ranks above it."""
    return ceiling if _ACTION_RANK[action] > _ACTION_RANK[ceiling] else action


def action_for_score(score: float) -> ConfidenceAction:
    if score >= AUTO_EXECUTE_THRESHOLD:
        return ConfidenceAction.auto_execute
    if score >= CONFIRM_THRESHOLD:
        return ConfidenceAction.confirm
    if score >= CLARIFY_THRESHOLD:
        return ConfidenceAction.clarify
    return ConfidenceAction.reject


def _field_present(intent: ParsedIntent, entity_type: EntityType) -> bool:
    if entity_type == EntityType.resource_type:
        return bool(intent.resource_type)
    if entity_type == EntityType.resource_name:
        return bool(intent.resource_name or intent.resource_id)
    if entity_type == EntityType.action:
        return bool(intent.action)
    return bool(intent.parameters)


def _best_by_type(entities: Iterable[EntityMatch]) -> Dict[EntityType, float]:
    best: Dict[EntityType, float] = {}
    for ent in entities:
        best[ent.type] = max(best.get(ent.type, 0.0), ent.confidence)
    return best


def entity_factors(intent: ParsedIntent) -> Tuple[float, float, List[EntityType]]:
    """Return ``(entity_score, completeness, missing_types)``."""
    required = REQUIRED_ENTITIES.get(intent.category, ())
    if not required:
        return 1.0, 1.0, []

    best = _best_by_type(intent.entities)
    total = 0.0
    present = 0
    missing: List[EntityType] = []
    for etype in required:
        conf = best.get(etype)
        if _field_present(intent, etype):
            conf = max(conf or 0.0, intent.confidence)
        if conf is None:
            missing.append(etype)
            continue
        present += 1
        total += conf
    return total / len(required), present / len(required), missing


def context_bonus(intent: ParsedIntent, context: Optional[IntentContext]) -> float:
    if context is None:
        return 0.0

    bonus = 0.0
    types = {e.resource_type or e.value for e in intent.entities if e.type == EntityType.resource_type}
    if intent.resource_type:
        types.add(intent.resource_type)

    page_type = resource_type_from_page(context.current_page)
    if page_type is not None and page_type in types:
        bonus += 0.1

    selected = context.selected_resource
    if selected is not None:
        ids = {e.resource_id for e in intent.entities if e.resource_id}
        if intent.resource_id:
            ids.add(intent.resource_id)
        if selected.id in ids or selected.type in types:
            bonus += 0.05

    action = normalize_action(intent.action) if intent.action else None
    if action:
        for pattern in context.user_patterns:
            if action in pattern or (intent.resource_type and intent.resource_type in pattern):
                bonus += 0.05
        if any(action in recent for recent in context.recent_actions):
            bonus += 0.05

    return min(bonus, MAX_CONTEXT_BONUS)


def is_ambiguous(intent: ParsedIntent, threshold: float = DISAMBIGUATION_THRESHOLD) -> bool:
    """Two candidates (or two same-typed entities) too close to choose between."""
    for ent in intent.entities:
        scored = sorted((c.score or 0.0 for c in ent.candidates), reverse=True)
        if ent.resource_id is None and len(scored) >= 2 and scored[0] - scored[1] < threshold:
            return True

    if intent.category == IntentCategory.comparison:
        # two named resources are the point of a comparison
        return False

    by_type: Dict[EntityType, List[EntityMatch]] = {}
    for ent in intent.entities:
        if ent.type in (EntityType.resource_type, EntityType.resource_name):
            by_type.setdefault(ent.type, []).append(ent)
    for same in by_type.values():
        distinct = {e.value: e.confidence for e in same}
        if len(distinct) < 2:
            continue
        top_two = sorted(distinct.values(), reverse=True)[:2]
        if top_two[0] - top_two[1] < threshold:
            return True
    return False


def evaluate_confidence(intent: ParsedIntent, context: Optional[IntentContext] = None) -> ConfidenceResult:
    entity_score, completeness, missing = entity_factors(intent)
    base = min(intent.confidence, entity_score) * completeness
    bonus = context_bonus(intent, context)
    score = round(min(1.0, base + bonus), 6)

    action = action_for_score(score)
    reasons: List[str] = []
    risk = INTENT_RISK_LEVELS.get(intent.category, 0.0)

    if action == ConfidenceAction.auto_execute and risk > HIGH_RISK_THRESHOLD:
        action = ConfidenceAction.confirm
        reasons.append("high-risk operation requires confirmation")

    ambiguous = is_ambiguous(intent)
    if ambiguous:
        action = cap_action(action, ConfidenceAction.clarify)
        reasons.append("several equally likely candidates")

    if intent.category not in _UNDERSTOOD_CATEGORIES:
        action = cap_action(action, ConfidenceAction.clarify)
        reasons.append("intent category not understood")

    if missing:
        reasons.append("missing " + ", ".join(m.value for m in missing))

    logger.debug(
        f"Confidence for '{intent.raw_text}': score={score} action={action.value} "
        f"entity={entity_score:.2f} completeness={completeness:.2f} bonus={bonus:.2f}"
    )
    return ConfidenceResult(
        score=score,
        action=action,
        factors={
            "intent": intent.confidence,
            "entity": round(entity_score, 6),
            "completeness": round(completeness, 6),
            "context_bonus": round(bonus, 6),
        },
        missing=missing,
        ambiguous=ambiguous,
        risk=risk,
        reason="; ".join(reasons) or f"score {score:.2f}",
    )
