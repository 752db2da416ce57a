from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest

from goi_engine.core.errors import IntentParseError
from goi_engine.intent import parser as parser_module
from goi_engine.intent.catalog import InMemoryResourceCatalog
from goi_engine.intent.parser import (
    IntentParser,
    ParserConfig,
    PydanticAIInvoker,
    build_intent_prompt,
    parse_intent,
    parse_intent_by_rules,
    parse_llm_response,
)
from goi_engine.schemas.domain import ResourceRef
from goi_engine.schemas.intent import EntityType, IntentCategory, IntentContext


class _FakeInvoker:
    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    async def __call__(self, messages: List[Dict[str, str]]) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        assert self.reply is not None
        return self.reply


def _catalog() -> InMemoryResourceCatalog:
    return InMemoryResourceCatalog(
        [
            ResourceRef(id="p1", type="prompt", name="客服问答"),
            ResourceRef(id="p4", type="prompt", name="翻译助手"),
        ]
    )


class TestRules:
    def test_navigation(self) -> None:
        intent = parse_intent_by_rules("打开提示词页面")

        assert intent is not None
        assert intent.category == IntentCategory.navigation
        assert intent.resource_type == "prompt"
        assert intent.action == "navigate"
        assert intent.resource_name is None
        assert intent.confidence == pytest.approx(0.85)

    def test_creation(self) -> None:
        intent = parse_intent_by_rules("创建一个测试任务")

        assert intent is not None
        assert intent.category == IntentCategory.creation
        assert intent.resource_type == "task"
        assert intent.action == "create"

    def test_quoted_name_resolved_against_catalog(self) -> None:
        intent = parse_intent_by_rules("delete prompt '客服问答'", catalog=_catalog())

        assert intent is not None
        assert intent.category == IntentCategory.deletion
        assert intent.resource_name == "客服问答"
        assert intent.resource_id == "p1"
        assert intent.confidence == pytest.approx(0.95)

    def test_misspelled_type_costs_confidence(self) -> None:
        intent = parse_intent_by_rules("create a promt")

        assert intent is not None
        assert intent.resource_type == "prompt"
        assert intent.confidence == pytest.approx(0.75)
        assert parse_intent_by_rules("create a promt", min_confidence=0.8) is None

    def test_comparison_keeps_both_names(self) -> None:
        intent = parse_intent_by_rules("对比提示词客服问答和提示词翻译助手")

        assert intent is not None
        assert intent.category == IntentCategory.comparison
        assert intent.resource_name == "客服问答"
        names = [e.value for e in intent.entities if e.type == EntityType.resource_name]
        assert names == ["客服问答", "翻译助手"]

    def test_parameters_are_collected(self) -> None:
        intent = parse_intent_by_rules("查看最近7天的任务")

        assert intent is not None
        assert intent.category == IntentCategory.query
        assert intent.parameters == {"time_range": "last_7_days"}

    def test_page_context_supplies_type(self) -> None:
        intent = parse_intent_by_rules("打开详情", IntentContext(current_page="/datasets/3"))

        assert intent is not None
        assert intent.resource_type == "dataset"

    def test_no_pattern(self) -> None:
        assert parse_intent_by_rules("hello there") is None
        assert parse_intent_by_rules("   ") is None


class TestLLMResponse:
    def test_fenced_json(self) -> None:
        reply = '```json\n{"category":"navigation","confidence":0.9,"resourceType":"model","action":"打开"}\n```'

        intent = parse_llm_response(reply, "打开模型")

        assert intent.category == IntentCategory.navigation
        assert intent.resource_type == "model"
        assert intent.action == "navigate"
        assert intent.raw_text == "打开模型"

    def test_clarification_payload(self) -> None:
        reply = json.dumps(
            {
                "category": "clarification",
                "confidence": 0.4,
                "clarificationNeeded": {"field": "target", "question": "请问您想查看什么？", "options": ["提示词"]},
            }
        )

        intent = parse_llm_response(reply, "帮我看看")

        assert intent.clarification_question == "请问您想查看什么？"
        assert intent.clarification_options == ["提示词"]

    @pytest.mark.parametrize("reply", ["not json", "[1, 2]", '{"category": "teleport"}', '{"confidence": 3}'])
    def test_malformed_reply(self, reply: str) -> None:
        with pytest.raises(IntentParseError):
            parse_llm_response(reply, "x")


def test_prompt_carries_context() -> None:
    messages = build_intent_prompt(
        "打开它",
        IntentContext(current_page="/prompts/1", recent_actions=["a", "b", "c", "d", "e", "f"]),
    )

    assert [m["role"] for m in messages] == ["system", "user"]
    assert "Current page: /prompts/1" in messages[1]["content"]
    assert "Recent actions: b, c, d, e, f" in messages[1]["content"]


class TestIntentParser:
    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        result = await IntentParser.create().parse("  ")

        assert result.success is False
        assert result.error == "empty input"
        assert result.intent is not None and result.intent.category == IntentCategory.unknown

    @pytest.mark.asyncio
    async def test_confident_rule_skips_model(self) -> None:
        invoker = _FakeInvoker(reply="{}")

        result = await IntentParser.create(llm_invoker=invoker).parse("打开提示词")

        assert result.success is True
        assert result.method == "rule"
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_model_fallback(self) -> None:
        invoker = _FakeInvoker(reply='{"category":"query","confidence":0.7,"resourceType":"prompt"}')

        result = await IntentParser.create(llm_invoker=invoker).parse("帮我瞧瞧那个东西")

        assert result.success is True
        assert result.method == "llm"
        assert result.intent is not None and result.intent.category == IntentCategory.query
        assert len(invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_model_reply_without_rule_match(self) -> None:
        invoker = _FakeInvoker(reply="not json")

        result = await IntentParser.create(llm_invoker=invoker).parse("帮我瞧瞧那个东西")

        assert result.success is False
        assert result.method == "fallback"
        assert result.intent is not None
        assert result.intent.category == IntentCategory.unknown
        assert result.intent.confidence == pytest.approx(0.3)
        assert result.error is not None and "not JSON" in result.error

    @pytest.mark.asyncio
    async def test_model_error_degrades_weak_rule_result(self) -> None:
        invoker = _FakeInvoker(error=RuntimeError("upstream timeout"))

        result = await IntentParser.create(llm_invoker=invoker).parse("create a promt")

        assert result.success is True
        assert result.method == "fallback"
        assert result.intent is not None
        assert result.intent.confidence == pytest.approx(0.6)
        assert result.error is not None and "upstream timeout" in result.error

    @pytest.mark.asyncio
    async def test_weak_rule_result_without_model(self) -> None:
        result = await IntentParser.create().parse("create a promt")

        assert result.success is True
        assert result.method == "rule"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_skip_llm_config(self) -> None:
        invoker = _FakeInvoker(reply='{"category":"query","confidence":0.7}')

        result = await IntentParser.create(llm_invoker=invoker, config=ParserConfig(skip_llm=True)).parse("hello there")

        assert result.success is False
        assert result.error == "no parser strategy understood the input"
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_module_level_helper(self) -> None:
        result = await parse_intent("删除提示词客服问答", catalog=_catalog())

        assert result.intent is not None
        assert result.intent.resource_id == "p1"


class _FakeRunResult:
    def __init__(self, output: Any) -> None:
        self.output = output


class _FakeAgent:
    created: List[Dict[str, Any]] = []

    def __init__(self, model: Any, output_type: Any = None, system_prompt: str = "") -> None:
        _FakeAgent.created.append({"model": model, "output_type": output_type, "system_prompt": system_prompt})
        self.prompts: List[str] = []

    async def run(self, prompt: str) -> _FakeRunResult:
        self.prompts.append(prompt)
        return _FakeRunResult('{"category": "navigation", "confidence": 0.9}')


@pytest.mark.asyncio
async def test_pydantic_ai_invoker_splits_system_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeAgent.created = []
    monkeypatch.setattr(parser_module, "Agent", _FakeAgent)

    invoker = PydanticAIInvoker("test-model")
    reply = await invoker(
        [
            {"role": "system", "content": "be helpful"},
            {"role": "user", "content": "打开模型"},
        ]
    )

    assert json.loads(reply)["category"] == "navigation"
    assert _FakeAgent.created == [{"model": "test-model", "output_type": str, "system_prompt": "be helpful"}]
