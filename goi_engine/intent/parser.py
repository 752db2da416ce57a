from __future__ import annotations

"""Hybrid rule + model intent parser.

Design overview
---------------

Parsing is an ordered chain of strategies. Each strategy returns an optional
``ParsedIntent``; the chain stops at the first result whose confidence clears
that strategy's acceptance threshold:

1. ``RuleIntentStrategy``: bilingual regex patterns plus alias tables and,
   when a ``ResourceCatalog`` is available, fuzzy resource name resolution.
   Cheap and deterministic. Accepted when its confidence reaches
   ``ParserConfig.rule_confidence_threshold``.
2. ``LLMIntentStrategy``: delegates to an injected ``LLMInvoker`` with a
   structured JSON prompt and validates the reply with pydantic.

Failures never escape ``IntentParser.parse``: a model error degrades to the
best rule result (at reduced confidence) or to an ``unknown`` intent, and the
error is reported on the ``IntentParseResult``.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import Field, ValidationError
from pydantic_ai import Agent

from ..core.config import settings
from ..core.errors import IntentParseError
from ..schemas.base import BaseSchema, ExternalSchema
from ..schemas.intent import (
    EntityMatch,
    EntityType,
    IntentCategory,
    IntentContext,
    IntentParseResult,
    ParsedIntent,
)
from .aliases import RESOURCE_ALIASES_BY_LENGTH, normalize_action
from .catalog import ResourceCatalog
from .confidence import REQUIRED_ENTITIES
from .entity_recognizer import (
    extract_parameters,
    extract_resource_name,
    parameters_from_entities,
    resolve_against_catalog,
    resource_type_from_page,
)
from .fuzzy_matcher import fuzzy_match_resource_type

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]

MALFORMED_RESPONSE_CONFIDENCE = 0.3
UNRESOLVED_TYPE_PENALTY = 0.2
FUZZY_TYPE_PENALTY = 0.1
MAX_RULE_CONFIDENCE = 0.95


class LLMInvoker(Protocol):
    """Opaque chat-completion capability: messages in, text out."""

    async def __call__(self, messages: List[ChatMessage]) -> str: ...


class ParserConfig(BaseSchema):
    rule_confidence_threshold: float = Field(default_factory=lambda: settings.rule_confidence_threshold)
    min_rule_confidence: float = Field(default_factory=lambda: settings.min_rule_confidence)
    llm_fallback_penalty: float = 0.8
    skip_llm: bool = False


@dataclass(frozen=True)
class IntentPattern:
    pattern: re.Pattern[str]
    category: IntentCategory
    resource: Callable[[re.Match[str]], str]
    confidence: float
    action: Optional[str] = None


def _p(regex: str) -> re.Pattern[str]:
    return re.compile(regex, re.IGNORECASE)


def _group(n: int) -> Callable[[re.Match[str]], str]:
    return lambda m: m.group(n)


def _pair(a: int, b: int) -> Callable[[re.Match[str]], str]:
    return lambda m: f"{m.group(a)}|{m.group(b)}"


INTENT_PATTERNS: List[IntentPattern] = [
    IntentPattern(_p(r"^(首页|仪表盘|工作台|dashboard)$"), IntentCategory.navigation, lambda m: "dashboard", 0.9),
    IntentPattern(_p(r"^(设置|系统设置|settings)$"), IntentCategory.navigation, lambda m: "settings", 0.9),
    IntentPattern(_p(r"^(监控|监控中心|monitor)$"), IntentCategory.navigation, lambda m: "monitor", 0.9),
    IntentPattern(_p(r"^(发布|上线)\s*(.+)$"), IntentCategory.creation, _group(2), 0.85, action="publish"),
    IntentPattern(_p(r"^(配置|设置)\s*(.+)$"), IntentCategory.modification, _group(2), 0.85, action="configure"),
    IntentPattern(_p(r"^(打开|去|进入|跳转到?|访问)\s*(.+?)(页面|页)?$"), IntentCategory.navigation, _group(2), 0.85),
    IntentPattern(
        _p(r"^(open|go\s*to|navigate\s*to|visit)\s+(.+?)(\s+page)?$"), IntentCategory.navigation, _group(2), 0.85
    ),
    IntentPattern(_p(r"^(创建|新建|添加|新增)(一个|个)?\s*(.+)$"), IntentCategory.creation, _group(3), 0.85),
    IntentPattern(_p(r"^(create|add|new)\s+(an?\s+)?(.+)$"), IntentCategory.creation, _group(3), 0.85),
    IntentPattern(_p(r"^(删除|移除|删掉|去掉)\s*(.+)$"), IntentCategory.deletion, _group(2), 0.85),
    IntentPattern(_p(r"^(delete|remove|del)\s+(.+)$"), IntentCategory.deletion, _group(2), 0.85),
    IntentPattern(_p(r"^(编辑|修改|更新|改)\s*(.+)$"), IntentCategory.modification, _group(2), 0.85),
    IntentPattern(_p(r"^(edit|update|modify)\s+(.+)$"), IntentCategory.modification, _group(2), 0.85),
    IntentPattern(_p(r"^(查看|查询|看看|显示|列出)\s*(.+)$"), IntentCategory.query, _group(2), 0.85),
    IntentPattern(_p(r"^(show|list|view|get|display)\s+(.+)$"), IntentCategory.query, _group(2), 0.85),
    IntentPattern(_p(r"^(.+?)(有哪些|列表|清单)$"), IntentCategory.query, _group(1), 0.8),
    IntentPattern(_p(r"^(运行|执行|跑一下|启动)\s*(.+)$"), IntentCategory.execution, _group(2), 0.85),
    IntentPattern(_p(r"^(run|execute|start)\s+(.+)$"), IntentCategory.execution, _group(2), 0.85),
    IntentPattern(_p(r"^(测试一下|试试|试一下)\s*(.+)$"), IntentCategory.execution, _group(2), 0.85, action="test"),
    IntentPattern(
        _p(r"^(用|使用)\s*(.+?)\s*(测试|试试|跑一下).*$"), IntentCategory.execution, _group(2), 0.8, action="test"
    ),
    IntentPattern(_p(r"^(test)\s+(.+)$"), IntentCategory.execution, _group(2), 0.85, action="test"),
    IntentPattern(_p(r"^(导出|下载|保存)\s*(.+)$"), IntentCategory.export, _group(2), 0.85),
    IntentPattern(_p(r"^(export|download|save)\s+(.+)$"), IntentCategory.export, _group(2), 0.85),
    IntentPattern(_p(r"^(对比|比较|比对)\s*(.+?)\s*(和|与|跟)\s*(.+)$"), IntentCategory.comparison, _pair(2, 4), 0.85),
    IntentPattern(_p(r"^(compare)\s+(.+?)\s+(with|and|to)\s+(.+)$"), IntentCategory.comparison, _pair(2, 4), 0.85),
]

DEFAULT_ACTIONS: Dict[IntentCategory, str] = {
    IntentCategory.navigation: "navigate",
    IntentCategory.creation: "create",
    IntentCategory.modification: "edit",
    IntentCategory.deletion: "delete",
    IntentCategory.query: "view",
    IntentCategory.execution: "execute",
    IntentCategory.comparison: "compare",
    IntentCategory.export: "export",
}


def _alias_resource_type(text: str) -> Optional[str]:
    lowered = text.lower().strip()
    for alias, rtype in RESOURCE_ALIASES_BY_LENGTH:
        if alias.lower() in lowered:
            return rtype.value
    return None


def parse_intent_by_rules(
    text: str,
    context: Optional[IntentContext] = None,
    catalog: Optional[ResourceCatalog] = None,
    *,
    min_confidence: Optional[float] = None,
) -> Optional[ParsedIntent]:
    """Parse ``text`` with the built-in patterns.

    Returns ``None`` when no pattern fires, or when the resulting confidence
    falls below ``min_confidence``.
    """
    floor = settings.min_rule_confidence if min_confidence is None else min_confidence
    raw = text.strip()
    if not raw:
        return None

    for pat in INTENT_PATTERNS:
        m = pat.pattern.match(raw)
        if m is None:
            continue
        resource_text = pat.resource(m).strip()
        intent = _build_rule_intent(raw, pat, resource_text, context, catalog)
        if intent.confidence < floor:
            logger.debug(f"Rule '{pat.pattern.pattern}' matched '{raw}' below floor ({intent.confidence:.2f})")
            return None
        return intent
    return None


def _build_rule_intent(
    raw: str,
    pat: IntentPattern,
    resource_text: str,
    context: Optional[IntentContext],
    catalog: Optional[ResourceCatalog],
) -> ParsedIntent:
    confidence = pat.confidence
    entities: List[EntityMatch] = []
    parts = [p.strip() for p in resource_text.split("|") if p.strip()] or [resource_text]

    resource_type = _alias_resource_type(resource_text)
    type_confidence = 1.0
    if resource_type is None:
        for token in re.split(r"\s+", resource_text):
            hit = fuzzy_match_resource_type(token) if len(token) >= 4 and token.isascii() else None
            if hit is not None:
                resource_type = hit.item
                type_confidence = 0.8
                confidence -= FUZZY_TYPE_PENALTY
                break
    if resource_type is None and context is not None:
        resource_type = resource_type_from_page(context.current_page)
        type_confidence = 0.6
    if resource_type is None and EntityType.resource_type in REQUIRED_ENTITIES.get(pat.category, ()):
        confidence -= UNRESOLVED_TYPE_PENALTY

    if resource_type is not None:
        entities.append(
            EntityMatch(
                type=EntityType.resource_type,
                value=resource_type,
                resource_type=resource_type,
                confidence=type_confidence,
            )
        )

    action = pat.action or DEFAULT_ACTIONS.get(pat.category)
    if action is not None:
        entities.append(EntityMatch(type=EntityType.action, value=normalize_action(action), confidence=0.9))

    resource_name: Optional[str] = None
    resource_id: Optional[str] = None
    for part in parts:
        name = extract_resource_name(part, resource_type)
        if name is None:
            continue
        if catalog is not None:
            name = resolve_against_catalog(name, catalog)
            if name.resource_id is not None:
                confidence = max(confidence, min(name.confidence, MAX_RULE_CONFIDENCE))
        entities.append(name)
        if resource_name is None:
            resource_name = name.value
            resource_id = name.resource_id

    params = extract_parameters(raw)
    entities.extend(params)

    return ParsedIntent(
        category=pat.category,
        confidence=round(max(0.0, min(confidence, 1.0)), 6),
        raw_text=raw,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_name=resource_name,
        action=normalize_action(action) if action else None,
        parameters=parameters_from_entities(params),
        entities=entities,
    )


INTENT_SYSTEM_PROMPT = """You are an intent understanding expert for an AI testing platform.
Analyse the user's command (Chinese or English) and identify the intent and the resources it refers to.

## Intent categories
- navigation: open or go to a page
- creation: create or add a resource
- modification: edit or update a resource
- deletion: delete or remove a resource
- query: view or list information
- execution: run or test something
- comparison: compare two resources
- export: export or download
- clarification: the intent is unclear and needs a follow-up question
- unknown: cannot be understood

## Resource types
prompt, dataset, model, provider, evaluator, task, scheduled_task, alert_rule,
notify_channel, schema, input_schema, output_schema, dashboard, settings, monitor

## Output format
Return plain JSON only (no markdown fences):
{"category": "...", "confidence": 0.0-1.0, "resourceType": "...", "resourceName": "...",
 "action": "...", "parameters": {}, "clarificationNeeded": {"field": "...", "question": "..."}}

## Examples
Input: "打开模型配置"
Output: {"category":"navigation","confidence":0.95,"resourceType":"model","action":"navigate"}
Input: "创建一个情感分析的prompt"
Output: {"category":"creation","confidence":0.9,"resourceType":"prompt","resourceName":"情感分析","action":"create"}
Input: "帮我看看"
Output: {"category":"clarification","confidence":0.4,"clarificationNeeded":{"field":"target","question":"请问您想查看什么？"}}
"""


def build_intent_prompt(text: str, context: Optional[IntentContext] = None) -> List[ChatMessage]:
    """Build the chat messages sent to the ``LLMInvoker``."""
    lines = [f"User input: {text}"]
    if context is not None:
        if context.current_page:
            lines.append(f"Current page: {context.current_page}")
        if context.selected_resource is not None:
            sel = context.selected_resource
            lines.append(f"Selected resource: {sel.type}/{sel.name or sel.id}")
        if context.recent_actions:
            lines.append("Recent actions: " + ", ".join(context.recent_actions[-5:]))
    return [
        {"role": "system", "content": INTENT_SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


class _ClarificationNeeded(ExternalSchema):
    field: Optional[str] = None
    question: Optional[str] = None
    options: List[str] = Field(default_factory=list)


class LLMIntentPayload(ExternalSchema):
    """Shape of the JSON object the model is asked to return."""

    category: IntentCategory = IntentCategory.unknown
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    resource_name: Optional[str] = Field(default=None, alias="resourceName")
    action: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    clarification_needed: Optional[_ClarificationNeeded] = Field(default=None, alias="clarificationNeeded")


_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def parse_llm_response(response: str, raw_text: str) -> ParsedIntent:
    """Validate a model reply and convert it into a ``ParsedIntent``.

    Raises
    ------
    IntentParseError
        When the reply is not a JSON object of the expected shape.
    """
    body = _FENCE.sub("", response.strip()).strip()
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise IntentParseError(f"model reply is not JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise IntentParseError("model reply is not a JSON object")
    try:
        payload = LLMIntentPayload.model_validate(data)
    except ValidationError as e:
        raise IntentParseError(f"model reply has an invalid shape ({e.error_count()} errors)") from e

    entities: List[EntityMatch] = []
    if payload.resource_type:
        entities.append(
            EntityMatch(
                type=EntityType.resource_type,
                value=payload.resource_type,
                resource_type=payload.resource_type,
                confidence=payload.confidence,
            )
        )
    if payload.resource_name:
        entities.append(
            EntityMatch(
                type=EntityType.resource_name,
                value=payload.resource_name,
                resource_type=payload.resource_type,
                resource_id=payload.resource_id,
                confidence=payload.confidence,
            )
        )
    action = normalize_action(payload.action) if payload.action else None
    if action:
        entities.append(EntityMatch(type=EntityType.action, value=action, confidence=payload.confidence))

    clar = payload.clarification_needed
    return ParsedIntent(
        category=payload.category,
        confidence=payload.confidence,
        raw_text=raw_text,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        resource_name=payload.resource_name,
        action=action,
        parameters=payload.parameters,
        entities=entities,
        clarification_question=clar.question if clar is not None else None,
        clarification_options=list(clar.options) if clar is not None else [],
    )


class IntentStrategy(Protocol):
    name: str
    min_accept: float

    async def parse(self, text: str, context: Optional[IntentContext]) -> Optional[ParsedIntent]: ...


class RuleIntentStrategy:
    name = "rule"

    def __init__(self, *, catalog: Optional[ResourceCatalog] = None, config: Optional[ParserConfig] = None) -> None:
        self._catalog = catalog
        self._config = config or ParserConfig()
        self.min_accept = self._config.rule_confidence_threshold

    async def parse(self, text: str, context: Optional[IntentContext]) -> Optional[ParsedIntent]:
        return parse_intent_by_rules(
            text, context, self._catalog, min_confidence=self._config.min_rule_confidence
        )


class LLMIntentStrategy:
    """Model-backed fallback; accepts whatever the model returns."""

    name = "llm"
    min_accept = 0.0

    def __init__(self, invoker: LLMInvoker) -> None:
        self._invoker = invoker

    async def parse(self, text: str, context: Optional[IntentContext]) -> Optional[ParsedIntent]:
        reply = await self._invoker(build_intent_prompt(text, context))
        return parse_llm_response(reply, text)


class PydanticAIInvoker:
    """``LLMInvoker`` backed by a Pydantic AI agent.

    The system messages become the agent's system prompt and the remaining
    messages are joined into the user prompt.
    """

    def __init__(self, model: Any) -> None:
        self._model = model

    async def __call__(self, messages: List[ChatMessage]) -> str:
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        prompt = "\n\n".join(m["content"] for m in messages if m.get("role") != "system")
        agent: Agent = Agent(self._model, output_type=str, system_prompt=system)
        result = await agent.run(prompt)
        return str(result.output)


def _unknown(text: str, confidence: float) -> ParsedIntent:
    return ParsedIntent(category=IntentCategory.unknown, confidence=confidence, raw_text=text)


class IntentParser:
    """Run parser strategies in order and never raise."""

    def __init__(
        self,
        strategies: Sequence[IntentStrategy],
        *,
        config: Optional[ParserConfig] = None,
    ) -> None:
        self._strategies = list(strategies)
        self._config = config or ParserConfig()

    @classmethod
    def create(
        cls,
        *,
        llm_invoker: Optional[LLMInvoker] = None,
        catalog: Optional[ResourceCatalog] = None,
        config: Optional[ParserConfig] = None,
    ) -> "IntentParser":
        cfg = config or ParserConfig()
        strategies: List[IntentStrategy] = [RuleIntentStrategy(catalog=catalog, config=cfg)]
        if llm_invoker is not None and not cfg.skip_llm:
            strategies.append(LLMIntentStrategy(llm_invoker))
        return cls(strategies, config=cfg)

    async def parse(self, text: str, context: Optional[IntentContext] = None) -> IntentParseResult:
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000, 3)

        if not text or not text.strip():
            return IntentParseResult(
                success=False, intent=_unknown(text or "", 0.0), method="rule", error="empty input", processing_ms=0.0
            )

        best: Optional[ParsedIntent] = None
        best_method = "rule"
        error: Optional[str] = None
        malformed = False

        for strategy in self._strategies:
            try:
                intent = await strategy.parse(text, context)
            except IntentParseError as e:
                logger.warning(f"Intent strategy '{strategy.name}' returned a malformed result: {e}")
                error = e.message
                malformed = True
                continue
            except Exception as e:
                logger.warning(f"Intent strategy '{strategy.name}' failed: {e}", exc_info=True)
                error = f"{strategy.name} strategy failed: {e}"
                continue

            if intent is None:
                logger.debug(f"Intent strategy '{strategy.name}' had no match for '{text}'")
                continue
            if intent.confidence >= strategy.min_accept:
                method = "rule" if strategy.name == "rule" else "llm"
                return IntentParseResult(
                    success=intent.category != IntentCategory.unknown,
                    intent=intent,
                    method=method,  # type: ignore[arg-type]
                    processing_ms=_elapsed(),
                )
            if best is None or intent.confidence > best.confidence:
                best = intent
                best_method = strategy.name

        if best is not None:
            degraded = best
            if error is not None:
                degraded = best.model_copy(
                    update={"confidence": round(best.confidence * self._config.llm_fallback_penalty, 6)}
                )
            return IntentParseResult(
                success=True,
                intent=degraded,
                method="fallback" if error is not None else best_method,  # type: ignore[arg-type]
                error=error,
                processing_ms=_elapsed(),
            )

        return IntentParseResult(
            success=False,
            intent=_unknown(text.strip(), MALFORMED_RESPONSE_CONFIDENCE if malformed else 0.0),
            method="fallback" if error is not None else "rule",
            error=error or "no parser strategy understood the input",
            processing_ms=_elapsed(),
        )


async def parse_intent(
    text: str,
    llm_invoker: Optional[LLMInvoker] = None,
    config: Optional[ParserConfig] = None,
    context: Optional[IntentContext] = None,
    catalog: Optional[ResourceCatalog] = None,
) -> IntentParseResult:
    """Module-level convenience wrapper around ``IntentParser``."""
    parser = IntentParser.create(llm_invoker=llm_invoker, catalog=catalog, config=config)
    return await parser.parse(text, context)
