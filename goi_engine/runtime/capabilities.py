from __future__ import annotations

"""Collaborator protocols used by the agent loop, and their defaults.

A TODO item is executed in three phases:

- ``Gatherer.gather`` resolves the item's inputs (references to earlier
  results, resource names) and may ask for a human checkpoint when a
  reference is ambiguous or cannot be found.
- ``Capability.execute`` performs the side effect. Capabilities are looked up
  in a ``CapabilityRegistry`` by ``OperationType``.
- ``Verifier.verify`` checks the outcome and may ask for a human review.

Capabilities should return structured outputs and never decide checkpoints
themselves; gating is done by the loop before any capability is invoked.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..intent.catalog import ResourceCatalog
from ..intent.fuzzy_matcher import MatchStrategy, needs_disambiguation, rank
from ..schemas.domain import (
    CheckpointType,
    OperationType,
    ResourceRef,
    StateAction,
    TodoItem,
    TodoItemStatus,
    TodoList,
)

logger = logging.getLogger(__name__)

_RESULT_REF = re.compile(r"^\$(\d+)\.result(?:\.(.+))?$")
_RESOURCE_REF = re.compile(r"^\$([a-z_]+):(.+)$")

RESOLVE_MIN_SCORE = 0.85
CANDIDATE_MIN_SCORE = 0.5
CANDIDATE_LIMIT = 5


@dataclass(frozen=True)
class CapabilityContext:
    """Execution context passed to capability implementations.

    Attributes
    ----------
    session_id:
        The session owning the loop.
    todo_list:
        Read-only snapshot of the TODO list at the time of execution.
    deps:
        The loop dependency bundle (``LoopDeps``).
    """

    session_id: str
    todo_list: TodoList
    deps: Any


@dataclass(frozen=True)
class CapabilityResult:
    ok: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class Capability(Protocol):
    """Protocol for capability implementations."""

    operation: OperationType

    async def execute(self, ctx: CapabilityContext, item: TodoItem, inputs: Dict[str, Any]) -> CapabilityResult: ...


class CapabilityRegistry:
    """
    In-memory mapping of operation types to capability implementations.

    Notes:
        - ``register`` overwrites any existing mapping for the operation type.
        - ``get`` raises ``KeyError`` if nothing is registered.
    """

    def __init__(self) -> None:
        self._caps: Dict[OperationType, Capability] = {}

    def register(self, cap: Capability) -> None:
        self._caps[cap.operation] = cap

    def get(self, operation: OperationType) -> Capability:
        return self._caps[operation]

    def has(self, operation: OperationType) -> bool:
        return operation in self._caps


@dataclass
class GatherResult:
    inputs: Dict[str, Any] = field(default_factory=dict)
    checkpoint_type: Optional[CheckpointType] = None
    candidates: List[ResourceRef] = field(default_factory=list)
    message: Optional[str] = None
    resource_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def needs_checkpoint(self) -> bool:
        return self.checkpoint_type is not None


class Gatherer(Protocol):
    async def gather(self, item: TodoItem, todo_list: TodoList, selection: Optional[str] = None) -> GatherResult: ...


class _Unresolved(Exception):
    def __init__(self, result: GatherResult) -> None:
        super().__init__(result.message or result.error or "unresolved reference")
        self.result = result


class ReferenceGatherer:
    """Resolve ``$N.result.path`` and ``$type:name`` references in item arguments.

    - ``$2.result.id`` is replaced by ``id`` from the result of the second item
      of the list; the referenced item must be completed.
    - ``$prompt:客服问答`` is looked up in the catalog with the fuzzy matcher. One
      clear hit resolves to its id, several close hits open a
      ``resource_selection`` checkpoint and no hit opens ``resource_not_found``.
      A human ``selection`` takes precedence over the lookup.
    """

    def __init__(self, catalog: Optional[ResourceCatalog] = None) -> None:
        self._catalog = catalog

    async def gather(self, item: TodoItem, todo_list: TodoList, selection: Optional[str] = None) -> GatherResult:
        resolved_id: List[str] = []
        try:
            inputs = {k: self._resolve(v, todo_list, selection, resolved_id) for k, v in item.operation.args.items()}
        except _Unresolved as e:
            return e.result

        if item.operation.resource_id:
            inputs.setdefault("resource_id", item.operation.resource_id)
        elif resolved_id:
            inputs.setdefault("resource_id", resolved_id[0])
        elif selection:
            inputs.setdefault("resource_id", selection)
        if item.user_feedback:
            inputs["feedback"] = item.user_feedback
        return GatherResult(inputs=inputs, resource_id=inputs.get("resource_id"))

    def _resolve(self, value: Any, todo_list: TodoList, selection: Optional[str], resolved_id: List[str]) -> Any:
        if isinstance(value, dict):
            return {k: self._resolve(v, todo_list, selection, resolved_id) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v, todo_list, selection, resolved_id) for v in value]
        if not isinstance(value, str):
            return value

        m = _RESULT_REF.match(value)
        if m is not None:
            return self._resolve_result(value, int(m.group(1)), m.group(2), todo_list)

        m = _RESOURCE_REF.match(value)
        if m is not None:
            rid = self._resolve_resource(m.group(1), m.group(2).strip(), selection)
            if rid is None:
                return value
            resolved_id.append(rid)
            return rid
        return value

    def _resolve_result(self, ref: str, index: int, path: Optional[str], todo_list: TodoList) -> Any:
        if index < 1 or index > len(todo_list.items):
            raise _Unresolved(GatherResult(error=f"reference {ref} points outside the plan"))
        source = todo_list.items[index - 1]
        if source.status != TodoItemStatus.completed or source.result is None:
            raise _Unresolved(GatherResult(error=f"reference {ref} needs '{source.title}' to be completed"))

        current: Any = source.result
        for part in (path.split(".") if path else []):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                raise _Unresolved(GatherResult(error=f"reference {ref} has no value at '{part}'"))
        return current

    def _resolve_resource(self, resource_type: str, name: str, selection: Optional[str]) -> Optional[str]:
        if selection:
            return selection
        if self._catalog is None:
            return None

        pool = self._catalog.list_resources(resource_type)
        hits = rank(name, pool, key=lambda r: r.name, limit=CANDIDATE_LIMIT, min_score=CANDIDATE_MIN_SCORE)
        if not hits:
            raise _Unresolved(
                GatherResult(
                    checkpoint_type=CheckpointType.resource_not_found,
                    message=f"No {resource_type} named '{name}' was found",
                )
            )
        top = hits[0]
        if len(hits) == 1 or (
            not needs_disambiguation(hits) and (top.strategy == MatchStrategy.exact or top.score >= RESOLVE_MIN_SCORE)
        ):
            logger.debug(f"Resolved ${resource_type}:{name} -> {top.item.id} ({top.strategy.value})")
            return top.item.id

        raise _Unresolved(
            GatherResult(
                checkpoint_type=CheckpointType.resource_selection,
                candidates=[h.item.model_copy(update={"score": round(h.score, 4)}) for h in hits],
                message=f"Several {resource_type} resources match '{name}', please pick one",
            )
        )


@dataclass
class VerifyResult:
    success: bool
    reason: str = ""
    needs_review: bool = False


class Verifier(Protocol):
    async def verify(self, item: TodoItem, result: Dict[str, Any]) -> VerifyResult: ...


class ResultVerifier:
    """Rule-based verification of capability outputs.

    A result explicitly reporting ``success: false`` fails. A result asking
    for ``needs_review`` (or any delete when ``review_deletes`` is set) opens a
    review checkpoint before the item completes.
    """

    def __init__(self, *, review_deletes: bool = False) -> None:
        self._review_deletes = review_deletes

    async def verify(self, item: TodoItem, result: Dict[str, Any]) -> VerifyResult:
        if result is None:
            return VerifyResult(success=False, reason="empty result")
        if result.get("success") is False:
            return VerifyResult(success=False, reason=str(result.get("error") or result.get("message") or "operation reported failure"))

        needs_review = bool(result.get("needs_review"))
        if self._review_deletes and item.operation.action == StateAction.delete.value:
            needs_review = True
        return VerifyResult(success=True, reason=f"{item.operation.type.value} succeeded", needs_review=needs_review)
