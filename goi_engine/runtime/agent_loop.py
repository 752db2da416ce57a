from __future__ import annotations

"""LangGraph agent loop.

``AgentLoop`` turns a goal into a ``TodoList`` and executes it one item per
``step`` while a human can confirm, redirect or reject individual items.

Loop states
-----------

``idle -> planning -> executing <-> waiting -> completed | failed``

- ``start`` plans the goal. A planning failure is returned as a result and
  leaves the loop in ``planning`` so ``start`` can be retried.
- ``step`` advances exactly one item. While ``waiting`` it is a no-op and
  once terminal it returns a summary.
- ``approve_checkpoint`` / ``reject_checkpoint`` are the only way out of
  ``waiting``. After either, the next pending item is gated right away so a
  following checkpoint surfaces in the same response.

Step graph
----------

Every step is one invocation of a compiled LangGraph state machine:

1. ``select`` picks the next pending item (or the approved one).
2. ``gate`` asks the ``CheckpointRuleEngine`` whether a human must confirm.
3. ``gather`` resolves inputs; ambiguous references open a checkpoint.
4. ``execute`` runs the capability with bounded retries and verifies it.
5. ``record`` stores the outcome and decides whether the loop completes or
   fails.

Concurrency
-----------

Mutating calls take the loop's ``asyncio.Lock`` without waiting. A second
mutation arriving while one is in flight is rejected with
``ConcurrentModificationError`` rather than queued.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from langgraph.graph import END, StateGraph

from ..checkpoint.models import CheckpointAction, SmartContext
from ..checkpoint.rules import build_checkpoint
from ..collaboration.models import TransferReason
from ..core.errors import (
    ConcurrentModificationError,
    InputValidationError,
    PlanningError,
    StateConflictError,
)
from ..core.monitoring import log_loop_finished, log_loop_started
from ..planning.models import PlanContext, PlanResult
from ..planning.planner import build_todo_list
from ..schemas.domain import (
    TERMINAL_LOOP_STATUSES,
    AgentLoopStatus,
    Checkpoint,
    CheckpointType,
    Controller,
    EventSource,
    GoiEventType,
    ResourceRef,
    StateAction,
    TodoItem,
    TodoItemStatus,
    TodoList,
    _utc_now,
)
from .capabilities import CapabilityContext
from .failure import FailureInfo, FailureType, classify_failure
from .models import AgentLoopConfig, LoopDeps, LoopStatus, StartResult, StepResult, _StepState
from .todo_state import transition

logger = logging.getLogger(__name__)

_RESOURCE_CHECKPOINTS = frozenset({CheckpointType.resource_selection, CheckpointType.resource_not_found})


def _require_text(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError(field, "must be a non-empty string")
    return value.strip()


class AgentLoop:
    """Per-session state machine that plans and executes a TODO list."""

    def __init__(self, config: AgentLoopConfig, deps: LoopDeps) -> None:
        self._config = config
        self._deps = deps
        self._status = AgentLoopStatus.idle
        self._todo_list: Optional[TodoList] = None
        self._goal: Optional[str] = None
        self._error: Optional[str] = None
        self._started_at: Optional[float] = None
        self._lock = asyncio.Lock()
        # (successes, failures) per operation kind, fed into smart rules
        self._history: Dict[str, List[int]] = {}
        self._graph = self._build_graph()

    @property
    def session_id(self) -> str:
        return self._config.session_id

    @property
    def status(self) -> AgentLoopStatus:
        return self._status

    @property
    def config(self) -> AgentLoopConfig:
        return self._config

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def _build_graph(self):
        """Build and compile the single-step LangGraph state machine."""
        g: StateGraph = StateGraph(_StepState)
        g.add_node("select", self._node_select)
        g.add_node("gate", self._node_gate)
        g.add_node("gather", self._node_gather)
        g.add_node("execute", self._node_execute)
        g.add_node("record", self._node_record)
        g.add_node("finish", self._node_finish)

        g.set_entry_point("select")
        g.add_conditional_edges("select", self._route_after_select, {"gate": "gate", "finish": "finish"})
        g.add_conditional_edges(
            "gate",
            self._route_after_gate,
            {"pause": END, "stop": END, "gather": "gather"},
        )
        g.add_conditional_edges(
            "gather",
            self._route_after_gather,
            {"pause": END, "execute": "execute", "record": "record"},
        )
        g.add_edge("execute", "record")
        g.add_edge("record", END)
        g.add_edge("finish", END)
        return g.compile()

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        goal: str,
        context: Union[PlanContext, Mapping[str, Any], None] = None,
    ) -> StartResult:
        """Plan ``goal`` and gate the first item.

        Notes
        -----
        The TODO list only becomes visible to readers once planning succeeded
        and the list passed validation.
        """
        goal = _require_text("goal", goal)
        plan_context = self._coerce_context(context)

        async with self._exclusive("start"):
            if self._status not in (AgentLoopStatus.idle, AgentLoopStatus.planning):
                raise StateConflictError("start", self._status.value, detail="the loop already has a plan")

            self._goal = goal
            if self._status == AgentLoopStatus.idle:
                self._set_status(AgentLoopStatus.planning, "planning started")

            try:
                result = await self._deps.planner.plan(goal, plan_context)
            except Exception as e:
                logger.error(f"Planner raised for session '{self.session_id}': {e}", exc_info=True)
                result = PlanResult(success=False, error=f"planner failed: {e}")

            todo_list: Optional[TodoList] = None
            error = result.error
            if result.success and result.output is not None:
                try:
                    todo_list = build_todo_list(self.session_id, goal, result.output)
                except PlanningError as e:
                    error = e.reason
            elif result.success:
                error = "planner returned no plan"

            if todo_list is None:
                self._error = error or "planning failed"
                logger.warning(f"Planning failed for session '{self.session_id}': {self._error}")
                self._emit(GoiEventType.planning_failed, {"goal": goal, "error": self._error})
                return StartResult(
                    success=False,
                    status=self._status,
                    error=self._error,
                    token_usage=result.token_usage,
                    latency_ms=result.latency_ms,
                )

            self._todo_list = todo_list
            self._error = None
            logger.info(f"Session '{self.session_id}' planned {len(todo_list.items)} item(s) for '{goal}'")
            self._emit(
                GoiEventType.todo_planned,
                {
                    "goal": goal,
                    "todo_list_id": todo_list.id,
                    "total": len(todo_list.items),
                    "items": [{"id": i.id, "title": i.title} for i in todo_list.items],
                },
                EventSource.ai,
            )
            self._set_status(AgentLoopStatus.executing, "plan ready")
            self._started_at = time.monotonic()
            log_loop_started(self.session_id, goal, self._deps.control.mode.value, len(todo_list.items))

            first = await self._run_graph(gate_only=True)
            return StartResult(
                success=True,
                status=self._status,
                todo_list=todo_list.snapshot(),
                goal_analysis=todo_list.goal_analysis,
                warnings=list(todo_list.warnings),
                token_usage=result.token_usage,
                latency_ms=result.latency_ms,
                waiting=first.waiting,
                checkpoint=first.checkpoint,
            )

    async def step(self) -> StepResult:
        """Advance exactly one TODO item."""
        async with self._exclusive("step"):
            if self._status in (AgentLoopStatus.idle, AgentLoopStatus.planning):
                raise StateConflictError("step", self._status.value, detail="call start() with a goal first")
            if self._status == AgentLoopStatus.waiting:
                cp = self.get_pending_checkpoint()
                return self._result(
                    cp.todo_item if cp is not None else None,
                    message="Waiting for the pending checkpoint to be approved or rejected",
                )
            if self._status in TERMINAL_LOOP_STATUSES:
                return self._result(None, message=self._summary())
            return await self._run_graph()

    async def approve_checkpoint(
        self,
        item_id: str,
        feedback: Optional[str] = None,
        selected_resource_id: Optional[str] = None,
    ) -> StepResult:
        """Approve the waiting item, execute it and gate the next one.

        A ``review`` checkpoint completes the already executed item. A resource
        checkpoint needs ``selected_resource_id``; the selection replaces the
        unresolved reference when the item is gathered again.
        """
        item_id = _require_text("item_id", item_id)
        async with self._exclusive("approve checkpoint"):
            item = self._waiting_item(item_id, "approve checkpoint")
            cp_type = item.checkpoint.type
            if cp_type in _RESOURCE_CHECKPOINTS:
                if not selected_resource_id:
                    raise InputValidationError("selected_resource_id", f"required to resolve a {cp_type.value} checkpoint")
                ids = {c.id for c in item.checkpoint.candidates}
                if cp_type == CheckpointType.resource_selection and ids and selected_resource_id not in ids:
                    raise InputValidationError("selected_resource_id", f"'{selected_resource_id}' is not one of the offered candidates")

            if feedback:
                item.user_feedback = feedback
            if selected_resource_id:
                item.selected_resource_id = selected_resource_id

            logger.info(f"Session '{self.session_id}' checkpoint approved for item '{item.id}' ({cp_type.value})")
            self._emit(
                GoiEventType.checkpoint_approved,
                {
                    "item_id": item.id,
                    "checkpoint_type": cp_type.value,
                    "feedback": feedback,
                    "selected_resource_id": selected_resource_id,
                },
                EventSource.user,
            )
            self._set_status(AgentLoopStatus.executing, "checkpoint approved")

            if cp_type == CheckpointType.review and item.result is not None:
                self._complete(item)
                if self._finish_if_done():
                    return self._result(item, message=self._summary())
                return await self._after_resolution(self._result(item, message=f"Completed: {item.title}"))

            executed = await self._run_graph(item_id=item.id, skip_gate=True, selection=item.selected_resource_id)
            return await self._after_resolution(executed)

    async def reject_checkpoint(self, item_id: str, reason: str) -> StepResult:
        """Skip the waiting item with ``reason`` and move on to the next one."""
        item_id = _require_text("item_id", item_id)
        reason = _require_text("reason", reason)
        async with self._exclusive("reject checkpoint"):
            item = self._waiting_item(item_id, "reject checkpoint")
            item.skip_reason = reason
            transition(item, TodoItemStatus.skipped, todo_list=self._todo_list, loop_status=self._status.value)

            logger.info(f"Session '{self.session_id}' checkpoint rejected for item '{item.id}': {reason}")
            self._emit(GoiEventType.checkpoint_rejected, {"item_id": item.id, "reason": reason}, EventSource.user)
            self._emit(GoiEventType.item_skipped, {"item_id": item.id, "title": item.title, "reason": reason}, EventSource.user)
            self._set_status(AgentLoopStatus.executing, "checkpoint rejected")

            if self._finish_if_done():
                return self._result(item, message=self._summary())
            return await self._after_resolution(self._result(item, message=f"Skipped: {item.title}"))

    def get_status(self) -> LoopStatus:
        tl = self._todo_list
        active = tl.active_items() if tl is not None else []
        return LoopStatus(
            status=self._status,
            current_item_id=active[0].id if active else None,
            controller=self._deps.control.get_controller(),
            mode=self._deps.control.mode,
            progress=tl.progress() if tl is not None else {},
            todo_list_id=tl.id if tl is not None else None,
            goal=self._goal,
            error=self._error,
        )

    def get_todo_list(self) -> Optional[TodoList]:
        return self._todo_list.snapshot() if self._todo_list is not None else None

    def get_pending_checkpoint(self) -> Optional[Checkpoint]:
        if self._status != AgentLoopStatus.waiting or self._todo_list is None:
            return None
        for item in self._todo_list.items:
            if item.status == TodoItemStatus.waiting:
                return build_checkpoint(item)
        return None

    # ------------------------------------------------------------------
    # graph nodes
    # ------------------------------------------------------------------

    async def _node_select(self, state: _StepState) -> _StepState:
        """Pick the item for this step; keeps a preset ``item_id``."""
        if state.get("item_id"):
            return state
        item = self._todo_list.next_pending() if self._todo_list is not None else None
        state["item_id"] = item.id if item is not None else None
        return state

    def _route_after_select(self, state: _StepState) -> str:
        return "gate" if state.get("item_id") else "finish"

    async def _node_gate(self, state: _StepState) -> _StepState:
        """Open a checkpoint when the active rules ask for one."""
        item = self._item(state)
        if state.get("skip_gate"):
            state["outcome"] = "approved"
            return state

        decision = self._deps.rules.evaluate(item, self._smart_context(item))
        if not decision.required:
            logger.debug(f"Item '{item.id}' auto-passes ({decision.reason})")
            state["outcome"] = "ready"
            return state

        cp_type = CheckpointType.approval if decision.action == CheckpointAction.require_detailed_confirm else item.checkpoint.type
        message = item.checkpoint.message or f"{decision.reason}: {item.title}"
        if decision.action == CheckpointAction.require_detailed_confirm:
            message = f"{message} (risk: {decision.risk.value}, please review the details)"
        self._open_checkpoint(item, cp_type, message, rule_id=decision.rule_id)
        state["outcome"] = "waiting"
        state["message"] = message
        return state

    def _route_after_gate(self, state: _StepState) -> str:
        if state.get("outcome") == "waiting":
            return "pause"
        if state.get("gate_only"):
            return "stop"
        return "gather"

    async def _node_gather(self, state: _StepState) -> _StepState:
        """Start the item and resolve its inputs."""
        item = self._item(state)
        transition(item, TodoItemStatus.in_progress, todo_list=self._todo_list, loop_status=self._status.value)
        self._emit(GoiEventType.item_started, {"item_id": item.id, "title": item.title}, EventSource.ai)
        self._transfer(Controller.ai, TransferReason.ai_executing)

        try:
            gathered = await self._deps.gatherer.gather(item, self._todo_list, state.get("selection"))
        except Exception as e:
            logger.warning(f"Gathering inputs for item '{item.id}' failed: {e}", exc_info=True)
            failure = classify_failure(e)
            state.update(outcome="failed", error=failure.message, failure_type=failure.type.value)
            return state

        if gathered.needs_checkpoint:
            self._open_checkpoint(
                item,
                gathered.checkpoint_type,
                gathered.message or item.title,
                candidates=gathered.candidates,
                reason=TransferReason.ai_blocked,
            )
            state.update(outcome="waiting", message=gathered.message)
            return state
        if gathered.error:
            failure = classify_failure(gathered.error)
            state.update(outcome="failed", error=gathered.error, failure_type=failure.type.value)
            return state

        if gathered.resource_id and not item.operation.resource_id:
            item.operation.resource_id = gathered.resource_id
        state["inputs"] = dict(gathered.inputs)
        state["outcome"] = "gathered"
        return state

    def _route_after_gather(self, state: _StepState) -> str:
        outcome = state.get("outcome")
        if outcome == "waiting":
            return "pause"
        if outcome == "failed":
            return "record"
        return "execute"

    async def _node_execute(self, state: _StepState) -> _StepState:
        """Run the capability with bounded retries and verify the outcome."""
        item = self._item(state)
        inputs = dict(state.get("inputs") or {})
        op = item.operation.type

        if not self._deps.capabilities.has(op):
            msg = f"no capability registered for '{op.value}' operations"
            logger.error(f"Item '{item.id}': {msg}")
            state.update(outcome="failed", error=msg, failure_type=FailureType.system.value)
            return state

        cap = self._deps.capabilities.get(op)
        attempts = self._config.max_retries + 1
        failure: Optional[FailureInfo] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = min(self._config.step_delay * (2 ** (attempt - 2)), self._config.max_step_delay)
                item.retry_count += 1
                logger.info(f"Retrying item '{item.id}' ({item.retry_count}/{self._config.max_retries}) in {delay}s")
                self._emit(
                    GoiEventType.item_retried,
                    {"item_id": item.id, "attempt": attempt, "delay": delay, "error": failure.message if failure else None},
                    EventSource.ai,
                )
                if delay > 0:
                    await asyncio.sleep(delay)

            ctx = CapabilityContext(session_id=self.session_id, todo_list=self._todo_list.snapshot(), deps=self._deps)
            try:
                call = cap.execute(ctx, item, inputs)
                if self._config.action_timeout:
                    res = await asyncio.wait_for(call, timeout=self._config.action_timeout)
                else:
                    res = await call
            except Exception as e:
                failure = classify_failure(e)
                logger.warning(f"Item '{item.id}' attempt {attempt} raised: {e}")
            else:
                if not res.ok:
                    failure = classify_failure(res.error or "capability reported failure")
                    logger.warning(f"Item '{item.id}' attempt {attempt} failed: {failure.message}")
                else:
                    try:
                        verdict = await self._deps.verifier.verify(item, res.output)
                    except Exception as e:
                        logger.warning(f"Verifying item '{item.id}' raised: {e}", exc_info=True)
                        failure = classify_failure(e)
                    else:
                        if verdict.success:
                            state.update(
                                outcome="review" if verdict.needs_review else "completed",
                                result=dict(res.output),
                                message=verdict.reason,
                            )
                            return state
                        failure = classify_failure(verdict.reason)
                        logger.warning(f"Item '{item.id}' attempt {attempt} did not verify: {verdict.reason}")

            if failure is not None and not failure.retryable:
                break

        failure = failure or FailureInfo(FailureType.logic, False, "action did not succeed")
        state.update(outcome="failed", error=failure.message, failure_type=failure.type.value)
        return state

    async def _node_record(self, state: _StepState) -> _StepState:
        """Persist the step outcome on the item and the loop."""
        item = self._item(state)
        outcome = state.get("outcome")

        if outcome == "review":
            item.result = state.get("result")
            self._open_checkpoint(
                item,
                CheckpointType.review,
                f"Please review the result of '{item.title}'",
                reason=TransferReason.ai_blocked,
            )
            state["outcome"] = "waiting"
            return state

        if outcome == "completed":
            item.result = state.get("result")
            self._complete(item)
            state["message"] = f"Completed: {item.title}"
        else:
            failure = FailureInfo(
                FailureType(state.get("failure_type") or FailureType.logic.value),
                False,
                state.get("error") or "unknown error",
            )
            item.error = failure.message
            transition(item, TodoItemStatus.failed, todo_list=self._todo_list, loop_status=self._status.value)
            self._remember(item, ok=False)
            logger.warning(f"Item '{item.id}' failed after {item.retry_count} retr(y/ies): {failure.message}")
            self._emit(
                GoiEventType.item_failed,
                {
                    "item_id": item.id,
                    "title": item.title,
                    "error": failure.message,
                    "failure_type": failure.type.value,
                    "retry_count": item.retry_count,
                },
                EventSource.ai,
            )
            if self._deps.failure_policy.is_fatal(item, failure, self._todo_list):
                self._error = f"'{item.title}' failed: {failure.message}"
                self._set_status(AgentLoopStatus.failed, self._error)
                self._transfer(Controller.user, TransferReason.ai_error)
                state["message"] = self._summary()
                return state
            state["message"] = f"Failed: {item.title} ({failure.message}); continuing with the plan"

        if self._finish_if_done():
            state["message"] = self._summary()
        return state

    async def _node_finish(self, state: _StepState) -> _StepState:
        """Nothing left to select."""
        self._finish_if_done()
        state["outcome"] = "finished"
        state["message"] = self._summary()
        return state

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        if self._lock.locked():
            raise ConcurrentModificationError(self.session_id, operation, self._status.value)
        async with self._lock:
            yield

    async def _run_graph(
        self,
        *,
        gate_only: bool = False,
        item_id: Optional[str] = None,
        skip_gate: bool = False,
        selection: Optional[str] = None,
    ) -> StepResult:
        state: _StepState = {
            "item_id": item_id,
            "skip_gate": skip_gate,
            "gate_only": gate_only,
            "selection": selection,
        }
        final = await self._graph.ainvoke(state)
        item = self._todo_list.get_item(final["item_id"]) if final.get("item_id") else None
        return self._result(item, message=final.get("message"))

    async def _after_resolution(self, resolved: StepResult) -> StepResult:
        """Gate the next pending item so a following checkpoint surfaces at once."""
        if self._status != AgentLoopStatus.executing:
            return resolved
        nxt = await self._run_graph(gate_only=True)
        if nxt.waiting or nxt.done:
            return nxt
        return resolved.model_copy(update={"status": self._status, "progress": self._progress()})

    def _item(self, state: _StepState) -> TodoItem:
        item = self._todo_list.get_item(state["item_id"]) if self._todo_list is not None else None
        if item is None:
            raise StateConflictError("step", self._status.value, detail=f"unknown item '{state.get('item_id')}'")
        return item

    def _waiting_item(self, item_id: str, operation: str) -> TodoItem:
        item = self._todo_list.get_item(item_id) if self._todo_list is not None else None
        if item is None:
            raise StateConflictError(operation, self._status.value, detail=f"unknown item '{item_id}'")
        if self._status != AgentLoopStatus.waiting or item.status != TodoItemStatus.waiting:
            raise StateConflictError(operation, self._status.value, item_status=item.status.value)
        return item

    def _open_checkpoint(
        self,
        item: TodoItem,
        cp_type: CheckpointType,
        message: str,
        *,
        rule_id: Optional[str] = None,
        candidates: Optional[List[ResourceRef]] = None,
        reason: TransferReason = TransferReason.checkpoint_open,
    ) -> None:
        item.checkpoint = item.checkpoint.model_copy(
            update={
                "type": cp_type,
                "message": message,
                "rule_id": rule_id,
                "candidates": list(candidates or []),
                "options": [],
                "opened_at": _utc_now(),
            }
        )
        transition(item, TodoItemStatus.waiting, todo_list=self._todo_list, loop_status=self._status.value)
        self._set_status(AgentLoopStatus.waiting, f"checkpoint on '{item.title}'")
        self._emit(
            GoiEventType.checkpoint_reached,
            {
                "item_id": item.id,
                "checkpoint_type": cp_type.value,
                "reason": message,
                "rule_id": rule_id,
                "candidates": [c.model_dump(mode="json") for c in item.checkpoint.candidates],
            },
            EventSource.ai,
        )
        self._transfer(Controller.user, reason)

    def _complete(self, item: TodoItem) -> None:
        transition(item, TodoItemStatus.completed, todo_list=self._todo_list, loop_status=self._status.value)
        self._remember(item, ok=True)
        logger.info(f"Session '{self.session_id}' completed item '{item.title}'")
        self._emit(
            GoiEventType.item_completed,
            {
                "item_id": item.id,
                "title": item.title,
                "resource_id": (item.result or {}).get("id") or item.operation.resource_id,
                "resource_type": item.operation.resource_type,
            },
            EventSource.ai,
        )

    def _finish_if_done(self) -> bool:
        if self._todo_list is None or not self._todo_list.is_finished():
            return False
        if self._status not in TERMINAL_LOOP_STATUSES:
            self._set_status(AgentLoopStatus.completed, "all items finished")
            self._transfer(Controller.user, TransferReason.loop_finished)
        return True

    def _set_status(self, to: AgentLoopStatus, reason: Optional[str] = None) -> None:
        current = self._status
        if current == to:
            return
        self._status = to
        logger.info(f"Session '{self.session_id}' loop {current.value} -> {to.value}" + (f": {reason}" if reason else ""))
        self._emit(GoiEventType.status_changed, {"from": current.value, "to": to.value, "reason": reason})
        if to in TERMINAL_LOOP_STATUSES:
            duration_ms = None
            if self._started_at is not None:
                duration_ms = (time.monotonic() - self._started_at) * 1000
            log_loop_finished(self.session_id, to.value, duration_ms, self._error)

    def _transfer(self, target: Controller, reason: TransferReason) -> None:
        result = self._deps.control.transfer_to(target, reason)
        if not result.success:
            logger.debug(f"Control stays with {result.from_controller.value}: {result.error}")

    def _emit(self, event_type: GoiEventType, payload: Dict[str, Any], source: EventSource = EventSource.system) -> None:
        self._deps.events.emit(self.session_id, event_type, payload, source=source)

    def _history_key(self, item: TodoItem) -> str:
        op = item.operation
        return f"{op.type.value}:{op.action}:{op.resource_type or ''}"

    def _remember(self, item: TodoItem, *, ok: bool) -> None:
        counts = self._history.setdefault(self._history_key(item), [0, 0])
        counts[0 if ok else 1] += 1

    def _smart_context(self, item: TodoItem) -> SmartContext:
        successes, failures = self._history.get(self._history_key(item), [0, 0])
        return SmartContext(
            operation_count=successes,
            recent_failures=failures,
            resource_is_new=item.operation.action == StateAction.create.value,
        )

    def _progress(self) -> Dict[str, int]:
        return self._todo_list.progress() if self._todo_list is not None else {}

    def _summary(self) -> str:
        p = self._progress()
        if not p:
            return f"Loop is {self._status.value}"
        text = (
            f"Loop {self._status.value}: {p['completed']} completed, {p['failed']} failed, "
            f"{p['skipped']} skipped of {p['total']}"
        )
        if self._error:
            text += f" ({self._error})"
        return text

    def _result(self, item: Optional[TodoItem], *, message: Optional[str] = None) -> StepResult:
        waiting = self._status == AgentLoopStatus.waiting
        return StepResult(
            done=self._status in TERMINAL_LOOP_STATUSES,
            waiting=waiting,
            status=self._status,
            current_item=item.model_copy(deep=True) if item is not None else None,
            checkpoint=self.get_pending_checkpoint() if waiting else None,
            message=message,
            progress=self._progress(),
        )

    @staticmethod
    def _coerce_context(context: Union[PlanContext, Mapping[str, Any], None]) -> Optional[PlanContext]:
        if context is None or isinstance(context, PlanContext):
            return context
        if not isinstance(context, Mapping):
            raise InputValidationError("context", "expected a mapping")
        return PlanContext.model_validate(dict(context))
