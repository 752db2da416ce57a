from __future__ import annotations

"""Boundary facade for GOI sessions.

``GoiService`` is what an API layer talks to. It provides one method per
boundary operation and never lets an exception escape:

- every ``GoiError`` becomes an ``ErrorResult`` carrying its ``code``,
  ``message`` and, for state conflicts, the current ``status``;
- any other exception is logged and reported as ``INTERNAL_ERROR`` so one
  misbehaving session never takes the process down.

Workflow
--------

1. ``understand`` turns a free-text command into an intent and, when needed,
   a clarification question; ``answer_clarification`` continues that dialog.
2. ``start`` hands a goal to the session's agent loop.
3. ``step`` / ``approve_checkpoint`` / ``reject_checkpoint`` drive the loop.
4. ``set_mode`` / ``transfer_control`` change who is in charge.

The service is intentionally thin: semantics live in the agent loop, the rule
engine and the control transfer manager.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar, Union

from .checkpoint.models import CheckpointRule, RulePreset
from .checkpoint.rules import MODE_PRESETS, preset_for
from .collaboration.models import ControllerState, ControlTransferResult, TransferReason
from .collaboration.sync import EventCallback, Subscription
from .core.config import settings
from .core.errors import GoiError, GoiErrorCode, InputValidationError, StateConflictError
from .core.logging_config import setup_logging
from .core.monitoring import initialize_logfire
from .intent.catalog import ResourceCatalog
from .intent.clarification import ClarificationDialog, ClarificationOutcome
from .intent.parser import IntentParser, LLMInvoker, ParserConfig, PydanticAIInvoker
from .intent.pipeline import IntentPipeline, UnderstandingResult
from .planning.models import PlanContext
from .planning.planner import Planner, TodoPlanner
from .runtime.agent_loop import AgentLoop
from .runtime.capabilities import CapabilityRegistry, ReferenceGatherer
from .runtime.models import LoopStatus, StartResult, StepResult
from .runtime.session_manager import AgentSessionManager, SessionRecord
from .schemas.base import BaseSchema
from .schemas.domain import Checkpoint, CollaborationMode, Controller, GoiEventType, TodoList, Understanding
from .schemas.intent import ClarificationResponse, IntentContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorResult(BaseSchema):
    code: GoiErrorCode
    message: str
    status: Optional[str] = None
    item_status: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def from_error(cls, error: GoiError) -> "ErrorResult":
        return cls.model_validate(error.to_dict())


def _require(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError(field, "is required")
    return value


class GoiService:
    """Session-scoped operations with structured error results."""

    def __init__(self, manager: AgentSessionManager, *, intent: Optional[IntentPipeline] = None) -> None:
        self._manager = manager
        self._intent = intent or IntentPipeline(IntentParser.create())
        self._dialogs: Dict[str, ClarificationDialog] = {}

    @classmethod
    def from_settings(
        cls,
        *,
        capabilities: Optional[CapabilityRegistry] = None,
        planner: Optional[Planner] = None,
        catalog: Optional[ResourceCatalog] = None,
        llm_invoker: Optional[LLMInvoker] = None,
    ) -> "GoiService":
        """Wire a service from ``settings``; also configures logging and tracing."""
        setup_logging(settings.log_level, settings.log_format, settings.enable_file_logging)
        initialize_logfire()

        if llm_invoker is None and settings.intent_model:
            llm_invoker = PydanticAIInvoker(settings.intent_model)
        parser = IntentParser.create(llm_invoker=llm_invoker, catalog=catalog, config=ParserConfig())
        manager = AgentSessionManager(
            planner=planner or TodoPlanner(model=settings.planner_model, catalog=catalog),
            capabilities=capabilities,
            gatherer=ReferenceGatherer(catalog),
        )
        return cls(manager, intent=IntentPipeline(parser, max_rounds=settings.max_clarification_rounds))

    @property
    def manager(self) -> AgentSessionManager:
        return self._manager

    # ------------------------------------------------------------------
    # agent loop
    # ------------------------------------------------------------------

    async def start(
        self,
        session_id: str,
        goal: str,
        context: Union[PlanContext, Mapping[str, Any], None] = None,
        *,
        user_id: Optional[str] = None,
        model_id: Optional[str] = None,
        mode: Union[CollaborationMode, str, None] = None,
    ) -> Union[StartResult, ErrorResult]:
        async def _op() -> StartResult:
            _require("session_id", session_id)
            _require("goal", goal)
            return await self._manager.start(
                session_id, goal, context, user_id=user_id, model_id=model_id, mode=mode
            )

        return await self._call("start", session_id, _op)

    async def step(self, session_id: str) -> Union[StepResult, ErrorResult]:
        async def _op() -> StepResult:
            return await self._loop(session_id).step()

        return await self._call("step", session_id, _op)

    async def approve_checkpoint(
        self,
        session_id: str,
        item_id: str,
        feedback: Optional[str] = None,
        selected_resource_id: Optional[str] = None,
    ) -> Union[StepResult, ErrorResult]:
        async def _op() -> StepResult:
            _require("item_id", item_id)
            return await self._loop(session_id).approve_checkpoint(item_id, feedback, selected_resource_id)

        return await self._call("approve_checkpoint", session_id, _op)

    async def reject_checkpoint(self, session_id: str, item_id: str, reason: str) -> Union[StepResult, ErrorResult]:
        async def _op() -> StepResult:
            _require("item_id", item_id)
            _require("reason", reason)
            return await self._loop(session_id).reject_checkpoint(item_id, reason)

        return await self._call("reject_checkpoint", session_id, _op)

    def get_status(self, session_id: str) -> Union[LoopStatus, ErrorResult]:
        return self._call_sync("get_status", session_id, lambda: self._loop(session_id).get_status())

    def get_todo_list(self, session_id: str) -> Union[Optional[TodoList], ErrorResult]:
        return self._call_sync("get_todo_list", session_id, lambda: self._loop(session_id).get_todo_list())

    def get_pending_checkpoint(self, session_id: str) -> Union[Optional[Checkpoint], ErrorResult]:
        return self._call_sync(
            "get_pending_checkpoint", session_id, lambda: self._loop(session_id).get_pending_checkpoint()
        )

    def reset_session(self, session_id: str) -> Union[LoopStatus, ErrorResult]:
        def _op() -> LoopStatus:
            _require("session_id", session_id)
            self._dialogs.pop(session_id, None)
            return self._manager.reset(session_id).loop.get_status()

        return self._call_sync("reset_session", session_id, _op)

    def remove_session(self, session_id: str) -> bool:
        self._dialogs.pop(session_id, None)
        return self._manager.remove(session_id)

    # ------------------------------------------------------------------
    # checkpoint rules
    # ------------------------------------------------------------------

    def get_rules(self, session_id: str) -> Union[List[CheckpointRule], ErrorResult]:
        return self._call_sync("get_rules", session_id, lambda: self._record(session_id).rules.get_rules())

    def switch_mode_rules(self, session_id: str, mode: Union[RulePreset, CollaborationMode, str]) -> Union[RulePreset, ErrorResult]:
        """Switch to the collaboration mode whose preset is ``mode``."""

        def _op() -> RulePreset:
            record = self._record(session_id)
            preset = preset_for(mode)
            target = next(m for m, p in MODE_PRESETS.items() if p == preset)
            self._apply_mode(record, target)
            return record.rules.get_active_preset()

        return self._call_sync("switch_mode_rules", session_id, _op)

    def add_user_rules(
        self, session_id: str, rules: Iterable[Union[CheckpointRule, Mapping[str, Any]]]
    ) -> Union[List[CheckpointRule], ErrorResult]:
        def _op() -> List[CheckpointRule]:
            record = self._record(session_id)
            added = record.rules.add_user_rules(list(rules))
            self._manager.events.emit(session_id, GoiEventType.rules_changed, {"added": [r.id for r in added]})
            return added

        return self._call_sync("add_user_rules", session_id, _op)

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    def get_controller(self, session_id: str) -> Union[Controller, ErrorResult]:
        return self._call_sync("get_controller", session_id, lambda: self._record(session_id).control.get_controller())

    def set_mode(self, session_id: str, mode: Union[CollaborationMode, str]) -> Union[ControllerState, ErrorResult]:
        return self._call_sync("set_mode", session_id, lambda: self._apply_mode(self._record(session_id), mode))

    def transfer_control(
        self, session_id: str, target: Union[Controller, str], message: Optional[str] = None
    ) -> Union[ControlTransferResult, ErrorResult]:
        def _op() -> ControlTransferResult:
            control = self._record(session_id).control
            reason = TransferReason.user_handback if str(getattr(target, "value", target)) == "ai" else TransferReason.user_takeover
            return control.transfer_to(target, reason, message)

        return self._call_sync("transfer_control", session_id, _op)

    # ------------------------------------------------------------------
    # understanding
    # ------------------------------------------------------------------

    async def understand(
        self,
        session_id: str,
        text: str,
        context: Union[IntentContext, Mapping[str, Any], None] = None,
    ) -> Union[UnderstandingResult, ErrorResult]:
        """Parse a human command; a clarification dialog is kept per session."""

        async def _op() -> UnderstandingResult:
            _require("session_id", session_id)
            ctx = IntentContext.model_validate(dict(context)) if isinstance(context, Mapping) else context
            result = await self._intent.understand(text, ctx)
            if result.dialog is not None:
                self._dialogs[session_id] = result.dialog
            else:
                self._dialogs.pop(session_id, None)
            return result

        return await self._call("understand", session_id, _op)

    def answer_clarification(
        self, session_id: str, response: Union[ClarificationResponse, Mapping[str, Any]]
    ) -> Union[ClarificationOutcome, ErrorResult]:
        def _op() -> ClarificationOutcome:
            dialog = self._dialogs.get(session_id)
            if dialog is None:
                raise StateConflictError("answer a clarification", "no_pending_question")
            reply = response if isinstance(response, ClarificationResponse) else ClarificationResponse.model_validate(dict(response))
            outcome = self._intent.answer(dialog, reply)
            if outcome.status != "continue":
                self._dialogs.pop(session_id, None)
            return outcome

        return self._call_sync("answer_clarification", session_id, _op)

    def get_understanding(self, session_id: str) -> Union[Understanding, ErrorResult]:
        return self._call_sync("get_understanding", session_id, lambda: self._record(session_id).sync.snapshot())

    def subscribe(self, session_id: str, callback: EventCallback) -> Subscription:
        return self._manager.events.subscribe(session_id, callback)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _record(self, session_id: str) -> SessionRecord:
        _require("session_id", session_id)
        return self._manager.get(session_id)

    def _apply_mode(self, record: SessionRecord, mode: Union[CollaborationMode, str]) -> ControllerState:
        state = record.control.set_mode(mode)
        record.session = record.session.model_copy(update={"mode": state.mode})
        return state

    def _loop(self, session_id: str) -> AgentLoop:
        return self._record(session_id).loop

    async def _call(self, operation: str, session_id: str, fn: Callable[[], Awaitable[T]]) -> Union[T, ErrorResult]:
        try:
            return await fn()
        except GoiError as e:
            logger.info(f"{operation} rejected for session '{session_id}': [{e.code.value}] {e.message}")
            return ErrorResult.from_error(e)
        except Exception as e:
            logger.error(f"{operation} failed for session '{session_id}': {e}", exc_info=True)
            return ErrorResult(code=GoiErrorCode.internal_error, message=f"{operation} failed: {e}")

    def _call_sync(self, operation: str, session_id: str, fn: Callable[[], T]) -> Union[T, ErrorResult]:
        try:
            return fn()
        except GoiError as e:
            logger.info(f"{operation} rejected for session '{session_id}': [{e.code.value}] {e.message}")
            return ErrorResult.from_error(e)
        except Exception as e:
            logger.error(f"{operation} failed for session '{session_id}': {e}", exc_info=True)
            return ErrorResult(code=GoiErrorCode.internal_error, message=f"{operation} failed: {e}")
