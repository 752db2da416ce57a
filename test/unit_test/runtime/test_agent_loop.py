from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

from goi_engine.checkpoint.rules import CheckpointRuleEngine
from goi_engine.collaboration.control_transfer import ControlTransferManager
from goi_engine.collaboration.sync import EventBus, InMemoryEventSink
from goi_engine.core.errors import (
    ConcurrentModificationError,
    InputValidationError,
    StateConflictError,
)
from goi_engine.intent.catalog import InMemoryResourceCatalog
from goi_engine.planning.models import PlanCheckpoint, PlanItem, PlanOperation, PlanOutput, PlanResult
from goi_engine.runtime import agent_loop as agent_loop_module
from goi_engine.runtime.agent_loop import AgentLoop
from goi_engine.runtime.capabilities import (
    CapabilityContext,
    CapabilityRegistry,
    CapabilityResult,
    ReferenceGatherer,
)
from goi_engine.runtime.models import AgentLoopConfig, LoopDeps
from goi_engine.schemas.domain import (
    AgentLoopStatus,
    CheckpointType,
    CollaborationMode,
    Controller,
    GoiEventType,
    OperationType,
    ResourceRef,
    TodoCategory,
    TodoItem,
    TodoItemStatus,
)


def _step(
    n: int,
    title: str,
    category: TodoCategory = TodoCategory.access,
    op_type: OperationType = OperationType.access,
    action: str = "navigate",
    *,
    depends_on: Optional[List[str]] = None,
    args: Optional[Dict[str, Any]] = None,
    flagged: bool = False,
) -> PlanItem:
    return PlanItem(
        id=str(n),
        title=title,
        category=category,
        operation=PlanOperation(type=op_type, action=action, resource_type="prompt", args=args or {}),
        depends_on=depends_on or [],
        checkpoint=PlanCheckpoint(required=flagged),
    )


def _plan(*items: PlanItem) -> PlanResult:
    return PlanResult(success=True, output=PlanOutput(goal_analysis="test goal", items=list(items)))


def _read_only_plan(n: int = 3) -> PlanResult:
    return _plan(*[_step(i, f"Look at page {i}") for i in range(1, n + 1)])


class _FakePlanner:
    def __init__(self, *results: Union[PlanResult, Exception]) -> None:
        self._results = list(results)
        self.goals: List[str] = []

    async def plan(self, goal: str, context: Any = None) -> PlanResult:
        self.goals.append(goal)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


class _DummyCapability:
    def __init__(
        self,
        operation: OperationType,
        *,
        outcomes: Sequence[Union[CapabilityResult, Exception]] = (),
        output: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operation = operation
        self._outcomes = list(outcomes)
        self._output = output or {"id": "res-1"}
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, ctx: CapabilityContext, item: TodoItem, inputs: Dict[str, Any]) -> CapabilityResult:
        self.calls.append({"item_id": item.id, "inputs": dict(inputs), "session_id": ctx.session_id})
        if self._outcomes:
            outcome = self._outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return CapabilityResult(ok=True, output=dict(self._output))


class _BlockingCapability:
    operation = OperationType.access

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, ctx: CapabilityContext, item: TodoItem, inputs: Dict[str, Any]) -> CapabilityResult:
        self.entered.set()
        await self.release.wait()
        return CapabilityResult(ok=True, output={"id": "done"})


@dataclass
class _Harness:
    loop: AgentLoop
    sink: InMemoryEventSink
    control: ControlTransferManager
    rules: CheckpointRuleEngine

    def event_types(self) -> List[GoiEventType]:
        return [e.type for e in self.sink.events]

    def items(self) -> List[TodoItem]:
        todo = self.loop.get_todo_list()
        assert todo is not None
        return todo.items


def _make_loop(
    planner: _FakePlanner,
    *caps: Any,
    mode: CollaborationMode = CollaborationMode.assisted,
    max_retries: int = 0,
    **deps_kwargs: Any,
) -> _Harness:
    sink = InMemoryEventSink()
    bus = EventBus(sink=sink)
    rules = CheckpointRuleEngine()
    control = ControlTransferManager("s1", rules, mode=mode, events=bus)
    registry = CapabilityRegistry()
    for cap in caps or (_DummyCapability(OperationType.access), _DummyCapability(OperationType.state)):
        registry.register(cap)
    deps = LoopDeps(planner=planner, capabilities=registry, rules=rules, control=control, events=bus, **deps_kwargs)
    config = AgentLoopConfig(session_id="s1", max_retries=max_retries, step_delay=0.0, action_timeout=None)
    return _Harness(loop=AgentLoop(config, deps), sink=sink, control=control, rules=rules)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_plans_and_exposes_todo_list(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan()))

        res = await h.loop.start("look around")

        assert res.success is True
        assert res.status == AgentLoopStatus.executing
        assert res.waiting is False
        assert res.todo_list is not None and len(res.todo_list.items) == 3
        assert res.goal_analysis == "test goal"
        assert all(i.status == TodoItemStatus.pending for i in h.items())
        assert GoiEventType.todo_planned in h.event_types()

    @pytest.mark.asyncio
    async def test_start_rejects_blank_goal(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan()))

        with pytest.raises(InputValidationError):
            await h.loop.start("   ")
        assert h.loop.status == AgentLoopStatus.idle

    @pytest.mark.asyncio
    async def test_planning_failure_hides_todo_list(self) -> None:
        planner = _FakePlanner(PlanResult(success=False, error="model unavailable"), _read_only_plan(2))
        h = _make_loop(planner)

        res = await h.loop.start("do something")

        assert res.success is False
        assert res.status == AgentLoopStatus.planning
        assert res.error == "model unavailable"
        assert res.todo_list is None
        assert h.loop.get_todo_list() is None
        assert GoiEventType.planning_failed in h.event_types()

        retry = await h.loop.start("do something")
        assert retry.success is True
        assert h.loop.get_todo_list() is not None

    @pytest.mark.asyncio
    async def test_planner_exception_is_reported_as_failure(self) -> None:
        h = _make_loop(_FakePlanner(RuntimeError("boom")))

        res = await h.loop.start("do something")

        assert res.success is False
        assert "boom" in (res.error or "")
        assert h.loop.get_todo_list() is None

    @pytest.mark.asyncio
    async def test_invalid_plan_is_rejected(self) -> None:
        cyclic = _plan(_step(1, "a", depends_on=["2"]), _step(2, "b", depends_on=["1"]))
        h = _make_loop(_FakePlanner(cyclic))

        res = await h.loop.start("do something")

        assert res.success is False
        assert "circular" in (res.error or "")
        assert h.loop.get_todo_list() is None

    @pytest.mark.asyncio
    async def test_start_twice_conflicts(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan()))
        await h.loop.start("look around")

        with pytest.raises(StateConflictError) as exc:
            await h.loop.start("again")
        assert exc.value.current_status == "executing"


class TestStep:
    @pytest.mark.asyncio
    async def test_step_before_start_conflicts(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan()))

        with pytest.raises(StateConflictError) as exc:
            await h.loop.step()
        assert exc.value.current_status == "idle"

    @pytest.mark.asyncio
    async def test_read_only_plan_runs_to_completion(self) -> None:
        access = _DummyCapability(OperationType.access)
        h = _make_loop(_FakePlanner(_read_only_plan(3)), access)
        await h.loop.start("look around")

        results = [await h.loop.step() for _ in range(3)]

        assert [r.done for r in results] == [False, False, True]
        assert h.loop.status == AgentLoopStatus.completed
        assert all(i.status == TodoItemStatus.completed for i in h.items())
        assert len(access.calls) == 3
        assert h.control.get_controller() == Controller.user

    @pytest.mark.asyncio
    async def test_terminates_within_item_count_plus_one_steps(self) -> None:
        n = 5
        h = _make_loop(_FakePlanner(_read_only_plan(n)))
        await h.loop.start("look around")

        steps = 0
        result = None
        while steps <= n + 1:
            result = await h.loop.step()
            steps += 1
            if result.done:
                break

        assert result is not None and result.done
        assert steps <= n + 1

    @pytest.mark.asyncio
    async def test_step_after_completion_returns_summary(self) -> None:
        access = _DummyCapability(OperationType.access)
        h = _make_loop(_FakePlanner(_read_only_plan(1)), access)
        await h.loop.start("look around")
        await h.loop.step()

        again = await h.loop.step()

        assert again.done is True
        assert "1 completed" in (again.message or "")
        assert len(access.calls) == 1

    @pytest.mark.asyncio
    async def test_step_while_waiting_is_a_no_op(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(2)), mode=CollaborationMode.manual)
        start = await h.loop.start("look around")
        assert start.waiting is True

        res = await h.loop.step()

        assert res.waiting is True
        assert res.current_item is not None
        assert res.current_item.id == h.items()[0].id
        assert [i.status for i in h.items()] == [TodoItemStatus.waiting, TodoItemStatus.pending]


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_manual_mode_waits_on_every_item(self) -> None:
        access = _DummyCapability(OperationType.access)
        h = _make_loop(_FakePlanner(_read_only_plan(3)), access, mode=CollaborationMode.manual)

        start = await h.loop.start("look around")
        assert start.waiting is True
        assert start.checkpoint is not None

        waits = 1
        result = None
        for _ in range(3):
            pending = h.loop.get_pending_checkpoint()
            assert pending is not None
            result = await h.loop.approve_checkpoint(pending.todo_item.id)
            if result.waiting:
                waits += 1

        assert waits == 3
        assert result is not None and result.done is True
        assert len(access.calls) == 3
        assert all(i.status == TodoItemStatus.completed for i in h.items())

    @pytest.mark.asyncio
    async def test_auto_mode_still_confirms_deletes(self) -> None:
        plan = _plan(
            _step(1, "Open prompt"),
            _step(2, "Delete prompt", TodoCategory.state, OperationType.state, "delete", depends_on=["1"]),
        )
        state = _DummyCapability(OperationType.state)
        h = _make_loop(_FakePlanner(plan), _DummyCapability(OperationType.access), state, mode=CollaborationMode.auto)
        start = await h.loop.start("delete the prompt")
        assert start.waiting is False

        first = await h.loop.step()
        assert first.waiting is False
        second = await h.loop.step()

        assert second.waiting is True
        assert second.checkpoint is not None
        assert second.checkpoint.type == CheckpointType.approval
        assert state.calls == []

    @pytest.mark.asyncio
    async def test_assisted_mode_confirms_planner_flagged_item(self) -> None:
        plan = _plan(_step(1, "Open prompt"), _step(2, "Publish", TodoCategory.state, OperationType.state, "publish", flagged=True))
        h = _make_loop(_FakePlanner(plan))
        await h.loop.start("publish the prompt")

        await h.loop.step()
        res = await h.loop.step()

        assert res.waiting is True
        assert res.checkpoint is not None
        assert res.checkpoint.todo_item.title == "Publish"

    @pytest.mark.asyncio
    async def test_reject_skips_and_moves_to_next_item(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(2)), mode=CollaborationMode.manual)
        await h.loop.start("look around")
        first_id = h.items()[0].id

        res = await h.loop.reject_checkpoint(first_id, "not needed")

        items = h.items()
        assert items[0].status == TodoItemStatus.skipped
        assert items[0].skip_reason == "not needed"
        assert items[1].status == TodoItemStatus.waiting
        assert res.waiting is True
        assert res.checkpoint is not None and res.checkpoint.todo_item.id == items[1].id
        assert GoiEventType.item_skipped in h.event_types()

    @pytest.mark.asyncio
    async def test_reject_last_item_completes_loop(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(1)), mode=CollaborationMode.manual)
        await h.loop.start("look around")

        res = await h.loop.reject_checkpoint(h.items()[0].id, "skip it")

        assert res.done is True
        assert h.loop.status == AgentLoopStatus.completed

    @pytest.mark.asyncio
    async def test_reject_without_reason_changes_nothing(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(2)), mode=CollaborationMode.manual)
        await h.loop.start("look around")
        before = [i.status for i in h.items()]
        events_before = len(h.sink.events)

        with pytest.raises(InputValidationError) as exc:
            await h.loop.reject_checkpoint(h.items()[0].id, "  ")

        assert exc.value.field == "reason"
        assert [i.status for i in h.items()] == before
        assert h.loop.status == AgentLoopStatus.waiting
        assert len(h.sink.events) == events_before

    @pytest.mark.asyncio
    async def test_approve_non_waiting_item_conflicts(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(2)), mode=CollaborationMode.manual)
        await h.loop.start("look around")
        second_id = h.items()[1].id

        with pytest.raises(StateConflictError) as exc:
            await h.loop.approve_checkpoint(second_id)

        assert exc.value.item_status == "pending"
        assert exc.value.current_status == "waiting"
        assert [i.status for i in h.items()] == [TodoItemStatus.waiting, TodoItemStatus.pending]

    @pytest.mark.asyncio
    async def test_approve_unknown_item_conflicts(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(1)), mode=CollaborationMode.manual)
        await h.loop.start("look around")

        with pytest.raises(StateConflictError):
            await h.loop.approve_checkpoint("missing")

    @pytest.mark.asyncio
    async def test_approve_feedback_reaches_capability(self) -> None:
        access = _DummyCapability(OperationType.access)
        h = _make_loop(_FakePlanner(_read_only_plan(1)), access, mode=CollaborationMode.manual)
        await h.loop.start("look around")

        await h.loop.approve_checkpoint(h.items()[0].id, feedback="use the staging page")

        assert access.calls[0]["inputs"]["feedback"] == "use the staging page"
        assert h.items()[0].user_feedback == "use the staging page"

    @pytest.mark.asyncio
    async def test_mode_switch_keeps_resolved_items(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(3)), mode=CollaborationMode.manual)
        await h.loop.start("look around")
        first_id = h.items()[0].id
        await h.loop.approve_checkpoint(first_id)
        completed_at = h.items()[0].completed_at

        h.control.set_mode(CollaborationMode.auto)

        items = h.items()
        assert items[0].status == TodoItemStatus.completed
        assert items[0].completed_at == completed_at
        assert items[1].status == TodoItemStatus.waiting

        res = await h.loop.approve_checkpoint(items[1].id)
        assert res.waiting is False
        last = await h.loop.step()
        assert last.done is True
        assert h.items()[0].completed_at == completed_at

    @pytest.mark.asyncio
    async def test_review_checkpoint_completes_without_rerun(self) -> None:
        access = _DummyCapability(OperationType.access, output={"id": "r1", "needs_review": True})
        h = _make_loop(_FakePlanner(_read_only_plan(1)), access)
        await h.loop.start("look around")

        res = await h.loop.step()
        assert res.waiting is True
        assert res.checkpoint is not None and res.checkpoint.type == CheckpointType.review

        done = await h.loop.approve_checkpoint(h.items()[0].id)

        assert done.done is True
        assert len(access.calls) == 1
        assert h.items()[0].result == {"id": "r1", "needs_review": True}


class TestResourceSelection:
    def _catalog(self) -> InMemoryResourceCatalog:
        return InMemoryResourceCatalog(
            [
                ResourceRef(id="p1", type="prompt", name="prompt-abc"),
                ResourceRef(id="p2", type="prompt", name="prompt-abcd"),
            ]
        )

    def _harness(self) -> tuple:
        access = _DummyCapability(OperationType.access)
        plan = _plan(_step(1, "Open abc", action="view", args={"target": "$prompt:abc"}))
        h = _make_loop(_FakePlanner(plan), access, gatherer=ReferenceGatherer(self._catalog()))
        return h, access

    @pytest.mark.asyncio
    async def test_ambiguous_reference_opens_selection(self) -> None:
        h, access = self._harness()
        await h.loop.start("open abc")

        res = await h.loop.step()

        assert res.waiting is True
        assert res.checkpoint is not None
        assert res.checkpoint.type == CheckpointType.resource_selection
        assert [c.id for c in res.checkpoint.candidates] == ["p1", "p2"]
        assert access.calls == []

    @pytest.mark.asyncio
    async def test_selection_is_required_and_must_be_a_candidate(self) -> None:
        h, _ = self._harness()
        await h.loop.start("open abc")
        await h.loop.step()
        item_id = h.items()[0].id

        with pytest.raises(InputValidationError):
            await h.loop.approve_checkpoint(item_id)
        with pytest.raises(InputValidationError):
            await h.loop.approve_checkpoint(item_id, selected_resource_id="p9")
        assert h.items()[0].status == TodoItemStatus.waiting

    @pytest.mark.asyncio
    async def test_selected_resource_is_used(self) -> None:
        h, access = self._harness()
        await h.loop.start("open abc")
        await h.loop.step()

        res = await h.loop.approve_checkpoint(h.items()[0].id, selected_resource_id="p2")

        assert res.done is True
        assert access.calls[0]["inputs"]["target"] == "p2"
        assert access.calls[0]["inputs"]["resource_id"] == "p2"


class TestFailures:
    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        flaky = _DummyCapability(
            OperationType.access,
            outcomes=[
                CapabilityResult(ok=False, error="service unavailable"),
                CapabilityResult(ok=False, error="connection reset"),
            ],
        )
        h = _make_loop(_FakePlanner(_read_only_plan(1)), flaky, max_retries=3)
        await h.loop.start("look around")

        res = await h.loop.step()

        assert res.done is True
        item = h.items()[0]
        assert item.status == TodoItemStatus.completed
        assert item.retry_count == 2
        assert h.event_types().count(GoiEventType.item_retried) == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self) -> None:
        broken = _DummyCapability(
            OperationType.access,
            outcomes=[RuntimeError("timeout talking to backend")] * 10,
        )
        h = _make_loop(_FakePlanner(_read_only_plan(2)), broken, max_retries=2)
        await h.loop.start("look around")

        await h.loop.step()

        item = h.items()[0]
        assert item.status == TodoItemStatus.failed
        assert item.retry_count == 2
        assert len(broken.calls) == 3

    @pytest.mark.asyncio
    async def test_independent_failure_does_not_stop_the_plan(self) -> None:
        cap = _DummyCapability(OperationType.access, outcomes=[CapabilityResult(ok=False, error="unexpected answer")])
        h = _make_loop(_FakePlanner(_read_only_plan(2)), cap)
        await h.loop.start("look around")

        first = await h.loop.step()
        assert first.done is False
        assert h.loop.status == AgentLoopStatus.executing
        second = await h.loop.step()

        assert second.done is True
        assert h.loop.status == AgentLoopStatus.completed
        assert [i.status for i in h.items()] == [TodoItemStatus.failed, TodoItemStatus.completed]

    @pytest.mark.asyncio
    async def test_failure_with_dependents_is_fatal(self) -> None:
        plan = _plan(_step(1, "Open list"), _step(2, "Open detail", depends_on=["1"]))
        cap = _DummyCapability(OperationType.access, outcomes=[PermissionError("access denied")])
        h = _make_loop(_FakePlanner(plan), cap, max_retries=3)
        await h.loop.start("look around")

        res = await h.loop.step()

        assert res.done is True
        assert h.loop.status == AgentLoopStatus.failed
        assert len(cap.calls) == 1
        assert h.items()[1].status == TodoItemStatus.pending
        status = h.loop.get_status()
        assert status.error is not None and "access denied" in status.error
        assert status.controller == Controller.user

    @pytest.mark.asyncio
    async def test_missing_capability_is_fatal(self) -> None:
        plan = _plan(_step(1, "Update prompt", TodoCategory.state, OperationType.state, "rename"))
        h = _make_loop(_FakePlanner(plan), _DummyCapability(OperationType.access), mode=CollaborationMode.auto)
        await h.loop.start("rename the prompt")

        res = await h.loop.step()

        assert res.done is True
        assert h.loop.status == AgentLoopStatus.failed
        assert "no capability registered" in (h.items()[0].error or "")

    @pytest.mark.asyncio
    async def test_unresolved_result_reference_fails_the_item(self) -> None:
        plan = _plan(_step(1, "Verify", TodoCategory.verify, OperationType.access, "view", args={"expect": "$2.result"}), _step(2, "Other"))
        h = _make_loop(_FakePlanner(plan))
        await h.loop.start("verify")

        await h.loop.step()

        item = h.items()[0]
        assert item.status == TodoItemStatus.failed
        assert "needs 'Other' to be completed" in (item.error or "")


class TestConcurrencyAndStatus:
    @pytest.mark.asyncio
    async def test_second_mutation_is_rejected_while_busy(self) -> None:
        blocking = _BlockingCapability()
        h = _make_loop(_FakePlanner(_read_only_plan(2)), blocking)
        await h.loop.start("look around")

        task = asyncio.create_task(h.loop.step())
        await blocking.entered.wait()
        assert h.loop.is_busy is True

        with pytest.raises(ConcurrentModificationError):
            await h.loop.step()

        blocking.release.set()
        res = await task
        assert res.done is False
        assert h.loop.is_busy is False
        assert h.items()[0].status == TodoItemStatus.completed

    @pytest.mark.asyncio
    async def test_get_status_reports_progress_and_controller(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(2)), mode=CollaborationMode.manual)
        await h.loop.start("look around")

        status = h.loop.get_status()

        assert status.status == AgentLoopStatus.waiting
        assert status.mode == CollaborationMode.manual
        assert status.current_item_id == h.items()[0].id
        assert status.progress["waiting"] == 1
        assert status.progress["total"] == 2
        assert status.goal == "look around"

    @pytest.mark.asyncio
    async def test_todo_list_is_a_snapshot(self) -> None:
        h = _make_loop(_FakePlanner(_read_only_plan(1)))
        await h.loop.start("look around")

        snapshot = h.loop.get_todo_list()
        assert snapshot is not None
        snapshot.items[0].status = TodoItemStatus.skipped

        assert h.items()[0].status == TodoItemStatus.pending


@pytest.mark.asyncio
async def test_loop_lifecycle_is_traced(monkeypatch: pytest.MonkeyPatch) -> None:
    records: List[Dict[str, Any]] = []
    monkeypatch.setattr(
        agent_loop_module,
        "log_loop_started",
        lambda session_id, goal, mode, total: records.append({"started": (session_id, goal, mode, total)}),
    )
    monkeypatch.setattr(
        agent_loop_module,
        "log_loop_finished",
        lambda session_id, status, duration_ms, error=None: records.append({"finished": (session_id, status)}),
    )
    h = _make_loop(_FakePlanner(_read_only_plan(1)))
    await h.loop.start("look around")

    await h.loop.step()

    assert records == [
        {"started": ("s1", "look around", "assisted", 1)},
        {"finished": ("s1", "completed")},
    ]
