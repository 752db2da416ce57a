from __future__ import annotations

"""Goal decomposition into a TODO list.

This module defines the default planner used by the agent loop.

Responsibilities
----------------

- Convert a goal (plus optional page/selection context) into a ``PlanOutput``.
- Validate the plan: dependencies must exist, no item may depend on itself
  and the dependency graph must be acyclic.
- Convert a validated plan into a ``TodoList`` (plan-local ids such as
  ``"1"`` are mapped onto generated item ids).

The planner never executes anything and never decides checkpoints; it may only
flag an item it considers sensitive through ``checkpoint.required``.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from pydantic_ai import Agent

from ..core.errors import PlanningError
from ..intent.aliases import resource_type_label
from ..intent.catalog import ResourceCatalog
from ..intent.parser import parse_intent_by_rules
from ..schemas.domain import (
    CheckpointConfig,
    GoiOperation,
    OperationType,
    StateAction,
    TodoCategory,
    TodoItem,
    TodoList,
)
from ..schemas.intent import IntentCategory, IntentContext, ParsedIntent
from .models import PlanCheckpoint, PlanContext, PlanItem, PlanOperation, PlanOutput, PlanResult, TokenUsage

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = (
    "You are the operation planner of an AI testing platform. Split the user's goal into a short "
    "ordered list of atomic steps.\n"
    "Each step has: id (\"1\", \"2\", ...), title, description, category "
    "(access | state | observation | verify), goiOperation and dependsOn (ids of earlier steps).\n"
    "goiOperation.type is one of:\n"
    "- access: navigate/view/open a page (action navigate | view | open)\n"
    "- state: change a resource (action create | update | delete)\n"
    "- observation: read data (action query | list)\n"
    "Use resourceType for the resource kind and resourceId only when the user named a concrete resource. "
    "Arguments may reference an earlier step result as \"$N.result.path\" or a resource by name as "
    "\"$type:name\".\n"
    "Set checkpoint.required=true on steps the user should look at before they run. "
    "Never invent resources the user did not mention."
)


class Planner(Protocol):
    async def plan(self, goal: str, context: Optional[PlanContext] = None) -> PlanResult: ...


def validate_plan(plan: PlanOutput) -> List[str]:
    """Return a list of problems; an empty list means the plan is valid."""
    errors: List[str] = []
    if not plan.items:
        errors.append("plan has no items")
        return errors

    ids = [item.id for item in plan.items]
    if len(set(ids)) != len(ids):
        errors.append("plan item ids are not unique")
    known = set(ids)
    deps: Dict[str, List[str]] = {}
    for item in plan.items:
        deps[item.id] = list(item.depends_on)
        for dep in item.depends_on:
            if dep == item.id:
                errors.append(f"item '{item.id}' depends on itself")
            elif dep not in known:
                errors.append(f"item '{item.id}' depends on unknown item '{dep}'")

    visiting: set = set()
    done: set = set()

    def _cycle(node: str) -> bool:
        if node in visiting:
            return True
        if node in done:
            return False
        visiting.add(node)
        for dep in deps.get(node, []):
            if dep != node and dep in known and _cycle(dep):
                return True
        visiting.discard(node)
        done.add(node)
        return False

    for item_id in ids:
        if _cycle(item_id):
            errors.append(f"circular dependency involving item '{item_id}'")
            break
    return errors


def build_todo_list(session_id: str, goal: str, plan: PlanOutput) -> TodoList:
    """Turn a validated plan into a ``TodoList``; raises ``PlanningError`` when invalid."""
    errors = validate_plan(plan)
    if errors:
        raise PlanningError("; ".join(errors))

    items: List[TodoItem] = []
    id_map: Dict[str, str] = {}
    for planned in plan.items:
        op = planned.operation
        item = TodoItem(
            title=planned.title,
            description=planned.description,
            category=planned.category,
            operation=GoiOperation(
                type=op.type,
                action=op.action,
                resource_type=op.resource_type,
                resource_id=op.resource_id,
                args=dict(op.args),
                irreversible=op.irreversible,
            ),
            checkpoint=CheckpointConfig(
                required=planned.checkpoint.required,
                type=planned.checkpoint.type,
                message=planned.checkpoint.message,
            ),
        )
        id_map[planned.id] = item.id
        items.append(item)

    for planned, item in zip(plan.items, items):
        item.depends_on = [id_map[d] for d in planned.depends_on]

    return TodoList(
        session_id=session_id,
        goal=goal,
        goal_analysis=plan.goal_analysis or None,
        warnings=list(plan.warnings),
        items=items,
    )


def _step(
    n: int,
    title: str,
    category: TodoCategory,
    op_type: OperationType,
    action: str,
    resource_type: Optional[str],
    *,
    resource_id: Optional[str] = None,
    args: Optional[Dict[str, Any]] = None,
    depends_on: Optional[List[str]] = None,
    flagged: bool = False,
    message: Optional[str] = None,
) -> PlanItem:
    return PlanItem(
        id=str(n),
        title=title,
        category=category,
        operation=PlanOperation(
            type=op_type, action=action, resource_type=resource_type, resource_id=resource_id, args=args or {}
        ),
        depends_on=depends_on or [],
        checkpoint=PlanCheckpoint(required=flagged, message=message),
    )


def _target_args(intent: ParsedIntent) -> Dict[str, Any]:
    if intent.resource_id:
        return {}
    if intent.resource_name and intent.resource_type:
        return {"target": f"${intent.resource_type}:{intent.resource_name}"}
    return {}


def template_plan(intent: ParsedIntent) -> PlanOutput:
    """Deterministic decomposition of a rule-parsed intent.

    Raises ``PlanningError`` when the intent has no usable category or
    resource type.
    """
    rt = intent.resource_type
    if rt is None or intent.category in (IntentCategory.unknown, IntentCategory.clarification):
        raise PlanningError(f"cannot derive steps from '{intent.raw_text}' without a planner model")

    label = resource_type_label(rt)
    rid = intent.resource_id
    target = _target_args(intent)
    name = intent.resource_name or label
    params = dict(intent.parameters)
    cat = intent.category
    items: List[PlanItem]

    if cat == IntentCategory.navigation:
        items = [_step(1, f"Open {label}", TodoCategory.access, OperationType.access, "navigate", rt, resource_id=rid)]
    elif cat == IntentCategory.creation:
        create_args = dict(params)
        if intent.resource_name:
            create_args["name"] = intent.resource_name
        items = [
            _step(1, f"Open {label} list", TodoCategory.access, OperationType.access, "navigate", rt),
            _step(
                2, f"Create {label}", TodoCategory.state, OperationType.state, StateAction.create.value, rt,
                args=create_args, depends_on=["1"],
            ),
            _step(
                3, f"Verify {label} was created", TodoCategory.verify, OperationType.observation, "query", rt,
                args={"expect": "$2.result"}, depends_on=["2"],
            ),
        ]
    elif cat == IntentCategory.modification:
        items = [
            _step(1, f"Open {name}", TodoCategory.access, OperationType.access, "view", rt, resource_id=rid, args=target),
            _step(
                2, f"Update {name}", TodoCategory.state, OperationType.state, StateAction.update.value, rt,
                resource_id=rid, args=dict(target, **params), depends_on=["1"],
            ),
            _step(
                3, f"Verify {name} was updated", TodoCategory.verify, OperationType.observation, "query", rt,
                args={"expect": "$2.result"}, depends_on=["2"],
            ),
        ]
    elif cat == IntentCategory.deletion:
        items = [
            _step(1, f"Open {name}", TodoCategory.access, OperationType.access, "view", rt, resource_id=rid, args=target),
            _step(
                2, f"Delete {name}", TodoCategory.state, OperationType.state, StateAction.delete.value, rt,
                resource_id=rid, args=dict(target), depends_on=["1"], flagged=True,
                message=f"Delete {name}? This cannot be undone.",
            ),
        ]
    elif cat == IntentCategory.execution:
        items = [
            _step(1, f"Open {name}", TodoCategory.access, OperationType.access, "view", rt, resource_id=rid, args=target),
            _step(
                2, f"Run {name}", TodoCategory.state, OperationType.state, "execute", rt,
                resource_id=rid, args=dict(target, **params), depends_on=["1"],
            ),
            _step(
                3, f"Check result of {name}", TodoCategory.verify, OperationType.observation, "query", rt,
                args={"expect": "$2.result"}, depends_on=["2"],
            ),
        ]
    elif cat == IntentCategory.export:
        items = [
            _step(1, f"Open {label} list", TodoCategory.access, OperationType.access, "navigate", rt),
            _step(
                2, f"Export {name}", TodoCategory.observation, OperationType.observation, "export", rt,
                resource_id=rid, args=dict(target, **params), depends_on=["1"],
            ),
        ]
    elif cat == IntentCategory.comparison:
        items = [
            _step(1, f"Open {label} list", TodoCategory.access, OperationType.access, "navigate", rt),
            _step(
                2, f"Compare {label}", TodoCategory.observation, OperationType.observation, "compare", rt,
                args=params, depends_on=["1"],
            ),
        ]
    else:
        items = [
            _step(1, f"Open {label} list", TodoCategory.access, OperationType.access, "navigate", rt),
            _step(
                2, f"List {label}", TodoCategory.observation, OperationType.observation, "list", rt,
                resource_id=rid, args=dict(target, **params), depends_on=["1"],
            ),
        ]

    warnings: List[str] = []
    if intent.resource_name and not intent.resource_id and cat != IntentCategory.creation:
        warnings.append(f"'{intent.resource_name}' will be looked up by name")
    return PlanOutput(
        goal_analysis=f"{cat.value} {rt}" + (f" '{intent.resource_name}'" if intent.resource_name else ""),
        items=items,
        warnings=warnings,
    )


def _usage_of(result: Any) -> TokenUsage:
    try:
        usage = result.usage()
    except Exception:
        logger.debug("Planner result carries no usage information")
        return TokenUsage()
    i = getattr(usage, "input_tokens", None) or getattr(usage, "request_tokens", None) or 0
    o = getattr(usage, "output_tokens", None) or getattr(usage, "response_tokens", None) or 0
    return TokenUsage(input=int(i), output=int(o), total=int(i) + int(o))


def _plan_prompt(goal: str, context: Optional[PlanContext]) -> str:
    lines = [f"goal={goal}"]
    if context is not None:
        if context.current_page:
            lines.append(f"current_page={context.current_page}")
        for res in context.selected_resources:
            lines.append(f"selected={res.type}:{res.id} {res.name or ''}".rstrip())
        for res in context.recent_resources:
            lines.append(f"recent={res.type}:{res.id} {res.name or ''}".rstrip())
        if context.system_summary:
            lines.append(f"summary={context.system_summary}")
    return "Create a short plan for this goal.\n\n" + "\n".join(lines) + "\n"


class TodoPlanner:
    """Planner that produces a validated ``PlanOutput``.

    The planner supports two modes:

    - ``model=None``: deterministic templates driven by the rule intent
      parser. Useful for tests and for deployments that avoid model calls.
    - ``model!=None``: uses Pydantic AI with ``output_type=PlanOutput`` and
      retries when the model returns an invalid plan.
    """

    def __init__(
        self,
        *,
        model: Any | None = None,
        catalog: Optional[ResourceCatalog] = None,
        max_attempts: int = 2,
        retry_delay: float = 0.0,
    ) -> None:
        self._model = model
        self._catalog = catalog
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    async def plan(self, goal: str, context: Optional[PlanContext] = None) -> PlanResult:
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000, 3)

        if self._model is None:
            intent_ctx = IntentContext(current_page=context.current_page) if context is not None else None
            intent = parse_intent_by_rules(goal, intent_ctx, self._catalog, min_confidence=0.0)
            if intent is None:
                return PlanResult(success=False, error=f"no plan template matches '{goal}'", latency_ms=_elapsed())
            try:
                template = template_plan(intent)
            except PlanningError as e:
                return PlanResult(success=False, error=e.reason, latency_ms=_elapsed())
            logger.debug(f"Template plan for '{goal}': {[i.title for i in template.items]}")
            return PlanResult(success=True, output=template, latency_ms=_elapsed())

        agent: Agent = Agent(self._model, output_type=PlanOutput, system_prompt=PLAN_SYSTEM_PROMPT)
        usage = TokenUsage()
        last_error = "planner returned no plan"
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await agent.run(_plan_prompt(goal, context))
            except Exception as e:
                last_error = f"planner model failed: {e}"
                logger.warning(f"Planning attempt {attempt} failed: {e}", exc_info=True)
            else:
                step_usage = _usage_of(result)
                usage = usage.add(step_usage.input, step_usage.output)
                output: PlanOutput = result.output
                errors = validate_plan(output)
                if not errors:
                    return PlanResult(success=True, output=output, token_usage=usage, latency_ms=_elapsed())
                last_error = "invalid plan: " + "; ".join(errors)
                logger.warning(f"Planning attempt {attempt} produced an invalid plan: {last_error}")
            if attempt < self._max_attempts and self._retry_delay > 0:
                await asyncio.sleep(self._retry_delay * attempt)

        return PlanResult(success=False, error=last_error, token_usage=usage, latency_ms=_elapsed())
