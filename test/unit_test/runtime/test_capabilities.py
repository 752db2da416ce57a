from __future__ import annotations

from typing import Any, Dict

import pytest

from goi_engine.intent.catalog import InMemoryResourceCatalog
from goi_engine.runtime.capabilities import (
    CapabilityContext,
    CapabilityRegistry,
    CapabilityResult,
    ReferenceGatherer,
    ResultVerifier,
)
from goi_engine.schemas.domain import (
    CheckpointType,
    GoiOperation,
    OperationType,
    ResourceRef,
    TodoItem,
    TodoItemStatus,
    TodoList,
)


class _DummyCapability:
    operation = OperationType.observation

    async def execute(self, ctx: CapabilityContext, item: TodoItem, inputs: Dict[str, Any]) -> CapabilityResult:
        return CapabilityResult(ok=True, output={"rows": []})


def _item(args: Dict[str, Any], *, action: str = "view", resource_id: str | None = None) -> TodoItem:
    return TodoItem(
        title="Open prompt",
        operation=GoiOperation(
            type=OperationType.access, action=action, resource_type="prompt", resource_id=resource_id, args=args
        ),
    )


def _catalog() -> InMemoryResourceCatalog:
    return InMemoryResourceCatalog(
        [
            ResourceRef(id="p1", type="prompt", name="客服问答"),
            ResourceRef(id="p2", type="prompt", name="prompt-abc"),
            ResourceRef(id="p3", type="prompt", name="prompt-abcd"),
            ResourceRef(id="d1", type="dataset", name="客服问答"),
        ]
    )


def test_registry_register_and_lookup() -> None:
    registry = CapabilityRegistry()
    cap = _DummyCapability()

    registry.register(cap)

    assert registry.has(OperationType.observation)
    assert registry.get(OperationType.observation) is cap
    assert not registry.has(OperationType.state)
    with pytest.raises(KeyError):
        registry.get(OperationType.state)


class TestReferenceGatherer:
    @pytest.mark.asyncio
    async def test_plain_args_pass_through(self) -> None:
        item = _item({"page": 2, "filters": ["a"]}, resource_id="p1")
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer().gather(item, todo)

        assert res.needs_checkpoint is False
        assert res.inputs == {"page": 2, "filters": ["a"], "resource_id": "p1"}
        assert res.resource_id == "p1"

    @pytest.mark.asyncio
    async def test_result_reference_reads_completed_item(self) -> None:
        first = _item({})
        first.status = TodoItemStatus.completed
        first.result = {"id": "task-9", "meta": {"owner": "amy"}}
        second = _item({"task": "$1.result.id", "owner": "$1.result.meta.owner", "all": "$1.result"})
        todo = TodoList(session_id="s1", goal="g", items=[first, second])

        res = await ReferenceGatherer().gather(second, todo)

        assert res.error is None
        assert res.inputs["task"] == "task-9"
        assert res.inputs["owner"] == "amy"
        assert res.inputs["all"] == first.result

    @pytest.mark.asyncio
    async def test_result_reference_outside_plan_is_an_error(self) -> None:
        item = _item({"x": "$7.result"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer().gather(item, todo)

        assert res.error is not None and "outside the plan" in res.error

    @pytest.mark.asyncio
    async def test_unique_name_resolves(self) -> None:
        item = _item({"target": "$prompt:客服问答"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer(_catalog()).gather(item, todo)

        assert res.needs_checkpoint is False
        assert res.inputs["target"] == "p1"
        assert res.resource_id == "p1"

    @pytest.mark.asyncio
    async def test_close_names_need_selection(self) -> None:
        item = _item({"target": "$prompt:abc"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer(_catalog()).gather(item, todo)

        assert res.checkpoint_type == CheckpointType.resource_selection
        assert [c.id for c in res.candidates] == ["p2", "p3"]
        assert res.candidates[0].score is not None
        assert res.candidates[0].score > res.candidates[1].score

    @pytest.mark.asyncio
    async def test_unknown_name_opens_not_found(self) -> None:
        item = _item({"target": "$prompt:zzz-unknown"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer(_catalog()).gather(item, todo)

        assert res.checkpoint_type == CheckpointType.resource_not_found
        assert res.candidates == []

    @pytest.mark.asyncio
    async def test_selection_wins_over_lookup(self) -> None:
        item = _item({"target": "$prompt:abc"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer(_catalog()).gather(item, todo, selection="p3")

        assert res.inputs["target"] == "p3"
        assert res.resource_id == "p3"

    @pytest.mark.asyncio
    async def test_without_catalog_reference_is_left_as_is(self) -> None:
        item = _item({"target": "$prompt:abc"})
        todo = TodoList(session_id="s1", goal="g", items=[item])

        res = await ReferenceGatherer().gather(item, todo)

        assert res.inputs == {"target": "$prompt:abc"}


class TestResultVerifier:
    @pytest.mark.asyncio
    async def test_reported_failure_fails(self) -> None:
        verdict = await ResultVerifier().verify(_item({}), {"success": False, "error": "quota exceeded"})

        assert verdict.success is False
        assert verdict.reason == "quota exceeded"

    @pytest.mark.asyncio
    async def test_needs_review_flag(self) -> None:
        verdict = await ResultVerifier().verify(_item({}), {"id": "x", "needs_review": True})

        assert verdict.success is True
        assert verdict.needs_review is True

    @pytest.mark.asyncio
    async def test_review_deletes(self) -> None:
        delete = _item({}, action="delete")

        assert (await ResultVerifier().verify(delete, {})).needs_review is False
        assert (await ResultVerifier(review_deletes=True).verify(delete, {})).needs_review is True
