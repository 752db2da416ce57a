"""
Monitoring and Tracing Configuration Module.

This module connects the engine to Pydantic Logfire. When enabled it traces
the Pydantic AI planner and intent model calls and records the start and end
of every agent loop run.

Tracing is opt-in: nothing is sent unless ``GOI_LOGFIRE_ENABLED`` is true and
``GOI_LOGFIRE_TOKEN`` is set.
"""

import logging
from typing import Optional

import logfire

from goi_engine.core.config import settings

logger = logging.getLogger(__name__)

_configured = False


def initialize_logfire() -> bool:
    """
    Configure Logfire from ``settings``.

    Returns:
        True when Logfire was configured, False when it stays disabled.
    """
    global _configured

    if not settings.logfire_enabled:
        logger.info("Logfire monitoring is disabled. Set GOI_LOGFIRE_ENABLED=true to enable.")
        return False

    if not settings.logfire_token:
        logger.warning(
            "Logfire is enabled but GOI_LOGFIRE_TOKEN is not set. "
            "Monitoring will not work. Set GOI_LOGFIRE_TOKEN to enable Logfire."
        )
        return False

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name=settings.logfire_service_name,
            environment=settings.logfire_environment,
        )
        if settings.logfire_trace_pydantic_ai:
            logfire.instrument_pydantic_ai()
            logger.info("Logfire: Pydantic AI instrumentation enabled")
    except Exception as e:
        logger.error(f"Failed to initialize Logfire: {e}", exc_info=True)
        return False

    _configured = True
    logger.info(
        f"Logfire monitoring initialized: "
        f"environment={settings.logfire_environment}, "
        f"service={settings.logfire_service_name}"
    )
    return True


def is_enabled() -> bool:
    return _configured


def log_loop_started(session_id: str, goal: str, mode: str, total_items: int) -> None:
    """Record a loop that finished planning and starts executing."""
    if not _configured:
        return
    try:
        logfire.info(
            "Agent loop started",
            session_id=session_id,
            goal=goal,
            mode=mode,
            total_items=total_items,
        )
    except Exception as e:
        logger.warning(f"Could not log loop start to Logfire: session_id={session_id}: {e}")


def log_loop_finished(session_id: str, status: str, duration_ms: Optional[float], error: Optional[str] = None) -> None:
    """Record a loop reaching ``completed`` or ``failed``."""
    if not _configured:
        return
    try:
        logfire.info(
            "Agent loop finished",
            session_id=session_id,
            status=status,
            duration_ms=duration_ms,
            error=error,
        )
    except Exception as e:
        logger.warning(f"Could not log loop completion to Logfire: session_id={session_id}: {e}")
