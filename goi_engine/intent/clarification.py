"""Clarification dialog for low-confidence intents.

When the confidence evaluator asks for clarification, the dialog produces one
targeted question at a time and folds the human's answers back into the held
``ParsedIntent``:

- ``select_resource``: several catalog candidates matched, pick one.
- ``disambiguate``: the resource type is unknown (or nothing was understood).
- ``provide_parameter``: a resource name is required but missing.
- ``confirm_action``: destructive operations are confirmed explicitly.
- ``general``: the intent was not understood at all.

A dialog is bounded by ``max_rounds``; once exhausted it reports ``gave_up``
instead of asking again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Literal, Optional

from ..core.config import settings
from ..core.errors import StateConflictError
from ..schemas.intent import (
    ClarificationOption,
    ClarificationRequest,
    ClarificationResponse,
    ClarificationState,
    ClarificationType,
    ConfidenceAction,
    ConfidenceResult,
    EntityMatch,
    EntityType,
    IntentCategory,
    IntentContext,
    ParsedIntent,
    ResourceType,
)
from .aliases import CATEGORY_LABELS, resource_type_label
from .confidence import evaluate_confidence

logger = logging.getLogger(__name__)

GAVE_UP_MESSAGE = "多次尝试后仍无法理解，请尝试更明确的描述"

_NEEDS_TYPE = frozenset(
    {
        IntentCategory.creation,
        IntentCategory.modification,
        IntentCategory.deletion,
        IntentCategory.query,
        IntentCategory.execution,
        IntentCategory.export,
    }
)
_NEEDS_IDENTIFIER = frozenset({IntentCategory.modification, IntentCategory.deletion, IntentCategory.execution})

_COMMON_RESOURCES = [
    (ResourceType.prompt, "管理和编辑提示词模板"),
    (ResourceType.dataset, "管理测试数据"),
    (ResourceType.task, "创建或查看测试任务"),
    (ResourceType.model, "配置 AI 模型"),
]

EXAMPLES = {
    IntentCategory.navigation: ["打开提示词管理", "去模型配置页面", "进入数据集"],
    IntentCategory.creation: ["创建一个情感分析的提示词", "新建测试任务", "添加模型 GPT-4"],
    IntentCategory.modification: ["编辑提示词「客服问答」", "修改模型配置", "更新数据集"],
    IntentCategory.deletion: ["删除提示词「旧版本」", "移除测试任务"],
    IntentCategory.query: ["查看所有提示词", "显示最近的任务", "任务有哪些"],
    IntentCategory.execution: ["运行测试任务「回归测试」", "测试模型 GPT-4", "执行定时任务"],
    IntentCategory.comparison: ["对比提示词 A 和 B", "比较两个版本的结果"],
    IntentCategory.export: ["导出任务结果", "下载数据集"],
}


def _resource_name_entity(intent: ParsedIntent) -> Optional[EntityMatch]:
    for ent in intent.entities:
        if ent.type == EntityType.resource_name:
            return ent
    return None


def infer_clarification_type(intent: ParsedIntent, *, confirmed: bool = False) -> Optional[ClarificationType]:
    """Pick the most useful question for ``intent``, or ``None`` if nothing is missing."""
    name = _resource_name_entity(intent)
    if name is not None and name.resource_id is None and not intent.resource_id and len(name.candidates) > 1:
        return ClarificationType.select_resource
    if intent.category in (IntentCategory.unknown, IntentCategory.clarification):
        return ClarificationType.general
    if not intent.resource_type and intent.category in _NEEDS_TYPE:
        return ClarificationType.disambiguate
    if not intent.resource_name and not intent.resource_id and intent.category in _NEEDS_IDENTIFIER:
        return ClarificationType.provide_parameter
    if intent.category == IntentCategory.deletion and not confirmed:
        return ClarificationType.confirm_action
    return None


def generate_clarification(
    intent: ParsedIntent, clarification_type: Optional[ClarificationType] = None
) -> Optional[ClarificationRequest]:
    """Build a clarification question of the given (or inferred) type."""
    ctype = clarification_type or infer_clarification_type(intent)
    if ctype is None:
        return None

    action_label = CATEGORY_LABELS.get(intent.category, "操作")
    resource_label = resource_type_label(intent.resource_type)

    if ctype == ClarificationType.select_resource:
        name = _resource_name_entity(intent)
        candidates = name.candidates if name is not None else []
        return ClarificationRequest(
            type=ctype,
            question=f"检测到多个匹配的{resource_label}，请选择：",
            options=[
                ClarificationOption(
                    id=c.id,
                    label=c.name,
                    value=c.id,
                    description=f"匹配度 {round((c.score or 0.0) * 100)}%" if c.score is not None else None,
                )
                for c in candidates
            ],
            allow_free_text=False,
        )

    if ctype == ClarificationType.disambiguate:
        return ClarificationRequest(
            type=ctype,
            question=f"请问您想{action_label}什么类型的资源？",
            options=[
                ClarificationOption(id=rt.value, label=resource_type_label(rt.value), value=rt.value, description=desc)
                for rt, desc in _COMMON_RESOURCES
            ],
        )

    if ctype == ClarificationType.provide_parameter:
        return ClarificationRequest(
            type=ctype,
            question=f"请问您想{action_label}哪个{resource_label}？请提供名称：",
            parameter_name="resource_name",
        )

    if ctype == ClarificationType.confirm_action:
        target = intent.resource_name or "该资源"
        verb = "删除" if intent.category == IntentCategory.deletion else action_label
        suffix = "此操作不可撤销。" if intent.category == IntentCategory.deletion else ""
        return ClarificationRequest(
            type=ctype,
            question=f"确定要{verb}{resource_label}「{target}」吗？{suffix}",
            options=[
                ClarificationOption(id="confirm", label=f"确认{verb}", value="confirm"),
                ClarificationOption(id="cancel", label="取消", value="cancel"),
            ],
            allow_free_text=False,
        )

    return ClarificationRequest(
        type=ClarificationType.general,
        question="抱歉，我没有理解您的意思。您可以尝试：",
        options=[
            ClarificationOption(id="help", label="查看帮助", value="help"),
            ClarificationOption(id="examples", label="查看示例", value="examples"),
            ClarificationOption(id="retry", label="重新输入", value="retry"),
        ],
    )


def _answer(request: ClarificationRequest, response: ClarificationResponse) -> Optional[str]:
    if response.selected_option_id is not None:
        for opt in request.options:
            if opt.id == response.selected_option_id:
                return opt.value
        return response.selected_option_id
    return response.value.strip() if response.value else None


def _replace_entities(intent: ParsedIntent, entity: EntityMatch) -> List[EntityMatch]:
    kept = [e for e in intent.entities if e.type != entity.type]
    return kept + [entity]


def process_response(
    request: ClarificationRequest, response: ClarificationResponse, intent: ParsedIntent
) -> ParsedIntent:
    """Fold a human reply into ``intent``; returns a new intent."""
    if response.cancelled:
        return intent.model_copy(update={"category": IntentCategory.unknown, "confidence": 0.0})

    value = _answer(request, response)

    if request.type == ClarificationType.select_resource and value:
        chosen = next((o for o in request.options if o.value == value), None)
        name = chosen.label if chosen is not None else (intent.resource_name or value)
        entity = EntityMatch(
            type=EntityType.resource_name,
            value=name,
            resource_type=intent.resource_type,
            resource_id=value,
            confidence=1.0,
        )
        return intent.model_copy(
            update={
                "resource_id": value,
                "resource_name": name,
                "entities": _replace_entities(intent, entity),
                "confidence": min(1.0, intent.confidence + 0.2),
            }
        )

    if request.type == ClarificationType.disambiguate and value:
        try:
            rtype = ResourceType(value).value
        except ValueError:
            return intent
        entity = EntityMatch(type=EntityType.resource_type, value=rtype, resource_type=rtype, confidence=1.0)
        return intent.model_copy(
            update={
                "resource_type": rtype,
                "entities": _replace_entities(intent, entity),
                "confidence": min(1.0, intent.confidence + 0.15),
            }
        )

    if request.type == ClarificationType.provide_parameter and value:
        entity = EntityMatch(
            type=EntityType.resource_name, value=value, resource_type=intent.resource_type, confidence=0.9
        )
        return intent.model_copy(
            update={
                "resource_name": value,
                "entities": _replace_entities(intent, entity),
                "confidence": min(1.0, intent.confidence + 0.1),
            }
        )

    if request.type == ClarificationType.confirm_action:
        confirmed = response.confirmed if response.confirmed is not None else value == "confirm"
        if confirmed:
            return intent.model_copy(update={"confidence": 1.0})
        return intent.model_copy(update={"category": IntentCategory.unknown, "confidence": 0.0})

    return intent


@dataclass
class ClarificationOutcome:
    status: Literal["resolved", "continue", "cancelled", "gave_up"]
    intent: ParsedIntent
    evaluation: Optional[ConfidenceResult] = None
    request: Optional[ClarificationRequest] = None
    message: Optional[str] = None


class ClarificationDialog:
    """One bounded clarification conversation around a single intent."""

    def __init__(
        self,
        intent: ParsedIntent,
        *,
        max_rounds: Optional[int] = None,
        context: Optional[IntentContext] = None,
    ) -> None:
        self._context = context
        self._confirmed = False
        self._state = ClarificationState(
            type=infer_clarification_type(intent) or ClarificationType.general,
            max_rounds=max_rounds if max_rounds is not None else settings.max_clarification_rounds,
            intent=intent,
        )

    @property
    def state(self) -> ClarificationState:
        return self._state

    @property
    def exhausted(self) -> bool:
        return self._state.rounds >= self._state.max_rounds

    def begin(self, clarification_type: Optional[ClarificationType] = None) -> Optional[ClarificationRequest]:
        request = generate_clarification(self._state.intent, clarification_type)
        self._state.pending = request
        if request is not None:
            self._state.type = request.type
        return request

    def respond(self, response: ClarificationResponse) -> ClarificationOutcome:
        request = self._state.pending
        if request is None:
            raise StateConflictError("answer a clarification", "no_pending_question")

        self._state.rounds += 1
        self._state.history.append(response)
        self._state.pending = None

        if response.cancelled:
            logger.info(f"Clarification {self._state.id} cancelled after {self._state.rounds} rounds")
            cancelled = process_response(request, response, self._state.intent)
            self._state.intent = cancelled
            return ClarificationOutcome(status="cancelled", intent=cancelled, message="已取消")

        intent = process_response(request, response, self._state.intent)
        if request.type == ClarificationType.confirm_action and intent.category != IntentCategory.unknown:
            self._confirmed = True
        self._state.intent = intent

        if request.type == ClarificationType.confirm_action and intent.category == IntentCategory.unknown:
            return ClarificationOutcome(status="cancelled", intent=intent, message="已取消")

        evaluation = evaluate_confidence(intent, self._context)
        next_type = infer_clarification_type(intent, confirmed=self._confirmed)
        understood = evaluation.action in (ConfidenceAction.auto_execute, ConfidenceAction.confirm) or self._confirmed
        if next_type is None and understood:
            return ClarificationOutcome(status="resolved", intent=intent, evaluation=evaluation)

        if self.exhausted:
            logger.info(f"Clarification {self._state.id} gave up after {self._state.rounds} rounds")
            return ClarificationOutcome(status="gave_up", intent=intent, evaluation=evaluation, message=GAVE_UP_MESSAGE)

        next_request = self.begin(next_type or ClarificationType.general)
        return ClarificationOutcome(status="continue", intent=intent, evaluation=evaluation, request=next_request)


def generate_examples(category: Optional[IntentCategory] = None) -> List[str]:
    if category is not None:
        return list(EXAMPLES.get(category, []))
    return (
        EXAMPLES[IntentCategory.navigation][:2]
        + EXAMPLES[IntentCategory.creation][:2]
        + EXAMPLES[IntentCategory.query][:2]
    )


def help_message() -> str:
    lines = ["我可以帮您完成以下操作："]
    for category, examples in EXAMPLES.items():
        lines.append(f"- {CATEGORY_LABELS[category]}：例如 {'、'.join(examples[:2])}")
    return "\n".join(lines)
