"""Agent loop runtime: step-wise TODO execution, collaborators and the session registry."""

from .agent_loop import AgentLoop
from .capabilities import (
    Capability,
    CapabilityContext,
    CapabilityRegistry,
    CapabilityResult,
    Gatherer,
    GatherResult,
    ReferenceGatherer,
    ResultVerifier,
    Verifier,
    VerifyResult,
)
from .failure import FailureInfo, FailurePolicy, FailureType, classify_failure
from .models import AgentLoopConfig, LoopDeps, LoopStatus, StartResult, StepResult
from .session_manager import AgentSessionManager, SessionRecord, SessionSummary
from .todo_state import ALLOWED_TRANSITIONS, can_transition, transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AgentLoop",
    "AgentLoopConfig",
    "AgentSessionManager",
    "Capability",
    "CapabilityContext",
    "CapabilityRegistry",
    "CapabilityResult",
    "FailureInfo",
    "FailurePolicy",
    "FailureType",
    "GatherResult",
    "Gatherer",
    "LoopDeps",
    "LoopStatus",
    "ReferenceGatherer",
    "ResultVerifier",
    "SessionRecord",
    "SessionSummary",
    "StartResult",
    "StepResult",
    "Verifier",
    "VerifyResult",
    "can_transition",
    "classify_failure",
    "transition",
]
