from __future__ import annotations

from goi_engine.intent.catalog import InMemoryResourceCatalog
from goi_engine.intent.entity_recognizer import (
    extract_parameters,
    extract_resource_name,
    merge_entities,
    parameters_from_entities,
    recognize_action,
    recognize_entities,
    recognize_resource_type,
    resolve_against_catalog,
    resource_type_from_page,
    top_entity,
)
from goi_engine.schemas.domain import ResourceRef
from goi_engine.schemas.intent import EntityMatch, EntityType, IntentContext


def _catalog() -> InMemoryResourceCatalog:
    return InMemoryResourceCatalog(
        [
            ResourceRef(id="p1", type="prompt", name="客服问答"),
            ResourceRef(id="p2", type="prompt", name="prompt-abc"),
            ResourceRef(id="p3", type="prompt", name="prompt-abcd"),
        ]
    )


class TestResourceType:
    def test_alias_in_sentence(self) -> None:
        ent = recognize_resource_type("打开提示词")

        assert ent is not None
        assert ent.value == "prompt"
        assert ent.confidence == 0.95

    def test_whole_text_alias_is_exact(self) -> None:
        ent = recognize_resource_type("Prompt")

        assert ent is not None and ent.confidence == 1.0

    def test_longest_alias_wins(self) -> None:
        ent = recognize_resource_type("查看定时任务")

        assert ent is not None and ent.value == "scheduled_task"

    def test_misspelled_alias(self) -> None:
        ent = recognize_resource_type("promt")

        assert ent is not None
        assert ent.value == "prompt"
        assert ent.confidence == 0.8

    def test_falls_back_to_current_page(self) -> None:
        ent = recognize_resource_type("看一下这个", IntentContext(current_page="/datasets/12"))

        assert ent is not None
        assert ent.value == "dataset"
        assert ent.confidence == 0.6

    def test_nothing_found(self) -> None:
        assert recognize_resource_type("看一下这个") is None


def test_resource_type_from_page() -> None:
    assert resource_type_from_page("/prompts/123") == "prompt"
    assert resource_type_from_page("/alert_rule/3?tab=history") == "alert_rule"
    assert resource_type_from_page("/nothing/here") is None
    assert resource_type_from_page(None) is None


def test_recognize_action() -> None:
    delete = recognize_action("删除客服问答提示词")
    navigate = recognize_action("open the prompt page")

    assert delete is not None and delete.value == "delete"
    assert navigate is not None and navigate.value == "navigate"
    assert recognize_action("提示词") is None


class TestResourceName:
    def test_quoted_name(self) -> None:
        ent = extract_resource_name("删除「客服问答」")

        assert ent is not None
        assert ent.value == "客服问答"
        assert ent.confidence == 0.95

    def test_name_left_after_removing_verbs_and_aliases(self) -> None:
        ent = extract_resource_name("删除客服问答提示词", "prompt")

        assert ent is not None
        assert ent.value == "客服问答"
        assert ent.resource_type == "prompt"
        assert ent.confidence == 0.7

    def test_only_an_alias_has_no_name(self) -> None:
        assert extract_resource_name("打开提示词") is None


class TestParameters:
    def test_relative_days_and_quantity(self) -> None:
        params = parameters_from_entities(extract_parameters("查看最近7天的前10条数据"))

        assert params == {"time_range": "last_7_days", "quantity": 10}

    def test_named_range_and_top(self) -> None:
        params = parameters_from_entities(extract_parameters("top 5 prompts today"))

        assert params == {"time_range": "today", "quantity": 5}

    def test_no_parameters(self) -> None:
        assert extract_parameters("打开提示词") == []


class TestCatalogResolution:
    def test_exact_name_resolves_id(self) -> None:
        ent = EntityMatch(type=EntityType.resource_name, value="客服问答", resource_type="prompt", confidence=0.7)

        resolved = resolve_against_catalog(ent, _catalog())

        assert resolved.resource_id == "p1"
        assert resolved.confidence == 1.0

    def test_close_names_stay_unresolved(self) -> None:
        ent = EntityMatch(type=EntityType.resource_name, value="abc", resource_type="prompt", confidence=0.7)

        resolved = resolve_against_catalog(ent, _catalog())

        assert resolved.resource_id is None
        assert [c.id for c in resolved.candidates] == ["p2", "p3"]
        assert resolved.confidence == 0.7

    def test_unknown_name_is_unchanged(self) -> None:
        ent = EntityMatch(type=EntityType.resource_name, value="zzzz", resource_type="prompt", confidence=0.7)

        assert resolve_against_catalog(ent, _catalog()) == ent


def test_recognize_entities_end_to_end() -> None:
    entities = recognize_entities("删除提示词客服问答", catalog=_catalog())

    name = top_entity(entities, EntityType.resource_name)
    assert top_entity(entities, EntityType.resource_type).value == "prompt"
    assert top_entity(entities, EntityType.action).value == "delete"
    assert name is not None and name.resource_id == "p1"


def test_merge_keeps_most_confident() -> None:
    low = EntityMatch(type=EntityType.resource_type, value="prompt", confidence=0.6)
    high = EntityMatch(type=EntityType.resource_type, value="prompt", confidence=0.95)
    other = EntityMatch(type=EntityType.action, value="view", confidence=0.9)

    merged = merge_entities([low, other], [high])

    assert len(merged) == 2
    assert top_entity(merged, EntityType.resource_type).confidence == 0.95
    assert top_entity([], EntityType.action) is None
