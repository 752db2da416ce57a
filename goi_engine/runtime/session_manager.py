from __future__ import annotations

"""Registry of live agent loops keyed by session id.

Each session owns one ``SessionRecord``: the ``Session`` model, its
``AgentLoop`` and the per-session collaborators the loop is wired to
(``CheckpointRuleEngine``, ``ControlTransferManager`` and ``StateSync``).
Loops are created lazily, replaced when a new goal is started after the
previous one finished, and torn down by ``remove``/``reset`` or by expiry.

The manager is explicit and injectable; there is no module-level registry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..checkpoint.rules import CheckpointRuleEngine
from ..collaboration.control_transfer import ControlTransferManager
from ..collaboration.sync import EventBus, StateSync
from ..core.config import settings
from ..core.errors import InputValidationError, SessionNotFoundError, StateConflictError
from ..planning.models import PlanContext
from ..planning.planner import Planner, TodoPlanner
from ..schemas.base import BaseSchema
from ..schemas.domain import (
    TERMINAL_LOOP_STATUSES,
    AgentLoopStatus,
    CollaborationMode,
    Controller,
    Session,
    _utc_now,
)
from .agent_loop import AgentLoop
from .capabilities import CapabilityRegistry, Gatherer, Verifier
from .failure import FailurePolicy
from .models import AgentLoopConfig, LoopDeps, StartResult

logger = logging.getLogger(__name__)

DepsFactory = Callable[[Session, CheckpointRuleEngine, ControlTransferManager, EventBus], LoopDeps]

_RECYCLABLE = frozenset({AgentLoopStatus.idle}) | TERMINAL_LOOP_STATUSES


@dataclass
class SessionRecord:
    session: Session
    loop: AgentLoop
    rules: CheckpointRuleEngine
    control: ControlTransferManager
    sync: StateSync
    last_used: datetime

    @property
    def recyclable(self) -> bool:
        return self.loop.status in _RECYCLABLE and not self.loop.is_busy


class SessionSummary(BaseSchema):
    session_id: str
    user_id: Optional[str] = None
    status: AgentLoopStatus
    mode: CollaborationMode
    controller: Controller
    created_at: datetime
    last_used: datetime


class AgentSessionManager:
    """Create, look up and tear down per-session agent loops.

    Collaborators shared by every session (planner, capability registry,
    gatherer, verifier, failure policy and the event bus) are given once.
    ``deps_factory`` replaces the default wiring entirely when a host needs
    different collaborators per session.
    """

    def __init__(
        self,
        *,
        planner: Optional[Planner] = None,
        capabilities: Optional[CapabilityRegistry] = None,
        gatherer: Optional[Gatherer] = None,
        verifier: Optional[Verifier] = None,
        failure_policy: Optional[FailurePolicy] = None,
        deps_factory: Optional[DepsFactory] = None,
        events: Optional[EventBus] = None,
        max_sessions: Optional[int] = None,
        session_timeout: Optional[float] = None,
    ) -> None:
        self._planner = planner or TodoPlanner(model=settings.planner_model)
        self._capabilities = capabilities or CapabilityRegistry()
        self._gatherer = gatherer
        self._verifier = verifier
        self._failure_policy = failure_policy
        self._deps_factory = deps_factory
        self._events = events or EventBus(queue_size=settings.event_queue_size)
        self._max_sessions = max_sessions if max_sessions is not None else settings.max_sessions
        self._timeout = timedelta(
            seconds=session_timeout if session_timeout is not None else settings.session_timeout_seconds
        )
        self._sessions: Dict[str, SessionRecord] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def capabilities(self) -> CapabilityRegistry:
        return self._capabilities

    def create(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        model_id: Optional[str] = None,
        mode: Union[CollaborationMode, str, None] = None,
        max_retries: Optional[int] = None,
        step_delay: Optional[float] = None,
    ) -> SessionRecord:
        """Register a new session; raises ``StateConflictError`` if it exists."""
        session_id = self._validate_id(session_id)
        existing = self._sessions.get(session_id)
        if existing is not None:
            raise StateConflictError(
                "create session", existing.loop.status.value, detail=f"session '{session_id}' already exists"
            )

        try:
            resolved_mode = CollaborationMode(mode or settings.default_mode)
        except ValueError:
            raise InputValidationError("mode", f"expected one of manual, assisted, auto; got '{mode}'") from None

        if len(self._sessions) >= self._max_sessions:
            self._evict()

        session = Session(
            session_id=session_id,
            user_id=user_id,
            model_id=model_id,
            mode=resolved_mode,
            max_retries=max_retries if max_retries is not None else settings.max_retries,
            step_delay=step_delay if step_delay is not None else settings.step_delay_seconds,
        )
        rules = CheckpointRuleEngine()
        control = ControlTransferManager(session_id, rules, mode=session.mode, events=self._events)
        sync = StateSync(session_id, self._events)
        record = SessionRecord(
            session=session,
            loop=self._new_loop(session, rules, control),
            rules=rules,
            control=control,
            sync=sync,
            last_used=_utc_now(),
        )
        self._sessions[session_id] = record
        logger.info(f"Created session '{session_id}' (mode {session.mode.value}); {len(self._sessions)} live")
        return record

    def get(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        record.last_used = _utc_now()
        return record

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def remove(self, session_id: str) -> bool:
        record = self._sessions.pop(session_id, None)
        if record is None:
            return False
        record.sync.close()
        closed = self._events.close_session(session_id)
        logger.info(f"Removed session '{session_id}' (closed {closed} subscription(s))")
        return True

    def get_or_create(self, session_id: str, **kwargs: Any) -> SessionRecord:
        if session_id in self._sessions:
            return self.get(session_id)
        return self.create(session_id, **kwargs)

    def reset(self, session_id: str) -> SessionRecord:
        """Discard the session's loop and shared understanding; mode and user rules are kept."""
        record = self.get(session_id)
        if record.loop.is_busy:
            raise StateConflictError("reset session", record.loop.status.value, detail="an operation is in flight")
        record.loop = self._new_loop(record.session, record.rules, record.control)
        record.control.reset()
        record.sync.reset()
        logger.info(f"Reset session '{session_id}'")
        return record

    async def start(
        self,
        session_id: str,
        goal: str,
        context: Union[PlanContext, Mapping[str, Any], None] = None,
        **create_kwargs: Any,
    ) -> StartResult:
        """Start ``goal`` on the session, creating the session when needed.

        A finished loop is replaced by a fresh one. A loop that is still
        executing or waiting is never replaced.
        """
        record = self.get_or_create(session_id, **create_kwargs)
        status = record.loop.status
        if status in TERMINAL_LOOP_STATUSES:
            logger.info(f"Session '{session_id}' loop is {status.value}; starting a new one")
            record.loop = self._new_loop(record.session, record.rules, record.control)
        elif status not in (AgentLoopStatus.idle, AgentLoopStatus.planning):
            raise StateConflictError("start", status.value, detail="a non-terminal loop already exists")
        return await record.loop.start(goal, context)

    def list_sessions(self) -> List[SessionSummary]:
        return [
            SessionSummary(
                session_id=sid,
                user_id=r.session.user_id,
                status=r.loop.status,
                mode=r.control.mode,
                controller=r.control.get_controller(),
                created_at=r.session.created_at,
                last_used=r.last_used,
            )
            for sid, r in self._sessions.items()
        ]

    def get_stats(self) -> Dict[str, int]:
        stats = {s.value: 0 for s in AgentLoopStatus}
        for record in self._sessions.values():
            stats[record.loop.status.value] += 1
        stats["total"] = len(self._sessions)
        stats["max_sessions"] = self._max_sessions
        return stats

    def cleanup_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Remove idle or finished sessions unused for longer than the timeout."""
        now = now or _utc_now()
        expired = [
            sid for sid, r in self._sessions.items() if r.recyclable and now - r.last_used > self._timeout
        ]
        for sid in expired:
            self.remove(sid)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired session(s)")
        return expired

    def _evict(self) -> None:
        candidates = [r for r in self._sessions.values() if r.recyclable]
        if not candidates:
            candidates = [r for r in self._sessions.values() if not r.loop.is_busy] or list(self._sessions.values())
        victim = min(candidates, key=lambda r: r.last_used)
        logger.warning(
            f"Session limit {self._max_sessions} reached; evicting '{victim.session.session_id}' "
            f"({victim.loop.status.value})"
        )
        self.remove(victim.session.session_id)

    def _new_loop(self, session: Session, rules: CheckpointRuleEngine, control: ControlTransferManager) -> AgentLoop:
        if self._deps_factory is not None:
            deps = self._deps_factory(session, rules, control, self._events)
        else:
            extra: Dict[str, Any] = {}
            if self._gatherer is not None:
                extra["gatherer"] = self._gatherer
            if self._verifier is not None:
                extra["verifier"] = self._verifier
            if self._failure_policy is not None:
                extra["failure_policy"] = self._failure_policy
            deps = LoopDeps(
                planner=self._planner,
                capabilities=self._capabilities,
                rules=rules,
                control=control,
                events=self._events,
                **extra,
            )
        config = AgentLoopConfig(
            session_id=session.session_id,
            user_id=session.user_id,
            model_id=session.model_id,
            max_retries=session.max_retries,
            step_delay=session.step_delay,
        )
        return AgentLoop(config, deps)

    @staticmethod
    def _validate_id(session_id: Any) -> str:
        if not isinstance(session_id, str) or not session_id.strip():
            raise InputValidationError("session_id", "must be a non-empty string")
        return session_id
