"""Error types for the GOI engine.

Every error carries a stable ``code`` and a human readable ``message`` so the
boundary layer (``goi_engine.service.GoiService``) can surface it as a
structured ``{code, message}`` payload.

- Validation errors are raised before any state is mutated.
- State-conflict errors carry the current loop (and item) status so that
  callers can resynchronize before retrying.
- Planning, execution and parse failures are usually reported through result
  objects; the exception types exist for the places where they must cross a
  function boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class GoiErrorCode(str, Enum):
    """Stable error codes exposed to callers."""

    validation_error = "VALIDATION_ERROR"
    state_conflict = "STATE_CONFLICT"
    concurrent_modification = "CONCURRENT_MODIFICATION"
    session_not_found = "SESSION_NOT_FOUND"
    planning_failed = "PLANNING_FAILED"
    execution_failed = "EXECUTION_FAILED"
    parse_failed = "PARSE_FAILED"
    internal_error = "INTERNAL_ERROR"


class GoiError(Exception):
    """Base error for all GOI engine exceptions."""

    code: GoiErrorCode = GoiErrorCode.internal_error

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message}


class InputValidationError(GoiError):
    """Raised when a required argument is missing or malformed."""

    code = GoiErrorCode.validation_error

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid '{field}': {reason}")
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return dict(super().to_dict(), field=self.field)


class StateConflictError(GoiError):
    """Raised when an operation is not valid for the current loop or item status."""

    code = GoiErrorCode.state_conflict

    def __init__(
        self,
        operation: str,
        current_status: str,
        *,
        item_status: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        msg = f"Cannot {operation} while loop is '{current_status}'"
        if item_status is not None:
            msg += f" (item is '{item_status}')"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.operation = operation
        self.current_status = current_status
        self.item_status = item_status

    def to_dict(self) -> Dict[str, Any]:
        out = dict(super().to_dict(), status=self.current_status)
        if self.item_status is not None:
            out["item_status"] = self.item_status
        return out


class ConcurrentModificationError(StateConflictError):
    """Raised when a second mutation arrives while another one is still in flight."""

    code = GoiErrorCode.concurrent_modification

    def __init__(self, session_id: str, operation: str, current_status: str = "busy") -> None:
        super().__init__(
            operation,
            current_status,
            detail=f"another operation is in flight for session '{session_id}'",
        )
        self.session_id = session_id


class SessionNotFoundError(GoiError):
    """Raised when no live session exists for the given id."""

    code = GoiErrorCode.session_not_found

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: '{session_id}'")
        self.session_id = session_id


class PlanningError(GoiError):
    """Raised by planners when a goal cannot be decomposed into a TODO list."""

    code = GoiErrorCode.planning_failed

    def __init__(self, reason: str) -> None:
        super().__init__(f"Planning failed: {reason}")
        self.reason = reason


class ExecutionError(GoiError):
    """Raised by capabilities to signal a failed TODO item action."""

    code = GoiErrorCode.execution_failed

    def __init__(self, item_id: str, reason: str) -> None:
        super().__init__(f"Execution of item '{item_id}' failed: {reason}")
        self.item_id = item_id
        self.reason = reason


class IntentParseError(GoiError):
    """Raised when a model response cannot be turned into a parsed intent."""

    code = GoiErrorCode.parse_failed

    def __init__(self, reason: str) -> None:
        super().__init__(f"Could not parse intent: {reason}")
        self.reason = reason
