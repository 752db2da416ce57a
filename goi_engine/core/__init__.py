"""
Core utilities and configuration for the GOI engine.

This package provides settings, logging configuration and the error taxonomy
shared by every other subpackage.
"""

from goi_engine.core.errors import (
    ConcurrentModificationError,
    ExecutionError,
    GoiError,
    GoiErrorCode,
    InputValidationError,
    IntentParseError,
    PlanningError,
    SessionNotFoundError,
    StateConflictError,
)
from goi_engine.core.logging_config import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "GoiError",
    "GoiErrorCode",
    "InputValidationError",
    "StateConflictError",
    "ConcurrentModificationError",
    "SessionNotFoundError",
    "PlanningError",
    "ExecutionError",
    "IntentParseError",
]
