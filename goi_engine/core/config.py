"""
Configuration Settings.

This module defines the engine configuration using Pydantic's BaseSettings.
All values are loaded from environment variables and the ``.env`` file
without explicit dotenv loading.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    GOI engine settings model.

    All properties are automatically bound from environment variables and .env file.
    Pydantic's BaseSettings handles dotenv loading automatically via model_config.
    """

    # =====================================================================
    # Pydantic Configuration
    # =====================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )

    # =====================================================================
    # Logging Configuration
    # =====================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        alias="GOI_LOG_LEVEL",
    )
    log_format: str = Field(
        default="detailed",
        description="Log format (simple, detailed, json)",
        alias="GOI_LOG_FORMAT",
    )
    enable_file_logging: bool = Field(
        default=False,
        description="Also write log records into files under log_file_dir",
        alias="GOI_ENABLE_FILE_LOGGING",
    )
    log_file_dir: str = Field(
        default="logs",
        description="Directory used for file logging",
        alias="GOI_LOG_FILE_DIR",
    )

    # =====================================================================
    # Agent Loop Configuration
    # =====================================================================
    default_mode: str = Field(
        default="assisted",
        description="Collaboration mode for new sessions (manual, assisted, auto)",
        alias="GOI_DEFAULT_MODE",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum retries of a failed TODO item before it is marked failed",
        alias="GOI_MAX_RETRIES",
    )
    step_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Base delay between retries of the same TODO item",
        alias="GOI_STEP_DELAY_SECONDS",
    )
    max_step_delay_seconds: float = Field(
        default=8.0,
        ge=0,
        description="Upper bound of the exponential retry backoff",
        alias="GOI_MAX_STEP_DELAY_SECONDS",
    )
    action_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Optional timeout applied to every action attempt",
        alias="GOI_ACTION_TIMEOUT_SECONDS",
    )
    planner_model: Optional[str] = Field(
        default=None,
        description="Pydantic AI model name used for planning (deterministic templates when unset)",
        alias="GOI_PLANNER_MODEL",
    )

    # =====================================================================
    # Session Registry Configuration
    # =====================================================================
    session_timeout_seconds: int = Field(
        default=1800,
        ge=1,
        description="Idle or finished sessions older than this are removed by cleanup",
        alias="GOI_SESSION_TIMEOUT_SECONDS",
    )
    max_sessions: int = Field(
        default=100,
        ge=1,
        description="Maximum number of live sessions before eviction",
        alias="GOI_MAX_SESSIONS",
    )
    event_queue_size: int = Field(
        default=100,
        ge=1,
        description="Bound of each queue-based event subscription",
        alias="GOI_EVENT_QUEUE_SIZE",
    )

    # =====================================================================
    # Intent Understanding Configuration
    # =====================================================================
    rule_confidence_threshold: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="Rule-based parse results at or above this confidence skip the LLM",
        alias="GOI_RULE_CONFIDENCE_THRESHOLD",
    )
    min_rule_confidence: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Rule-based parse results below this confidence count as a miss",
        alias="GOI_MIN_RULE_CONFIDENCE",
    )
    max_clarification_rounds: int = Field(
        default=3,
        ge=1,
        description="Clarification rounds before the dialog gives up",
        alias="GOI_MAX_CLARIFICATION_ROUNDS",
    )
    intent_model: Optional[str] = Field(
        default=None,
        description="Pydantic AI model name used as the intent parsing fallback",
        alias="GOI_INTENT_MODEL",
    )

    # =====================================================================
    # Monitoring Configuration
    # =====================================================================
    logfire_enabled: bool = Field(
        default=False,
        description="Send traces of agent loops and Pydantic AI calls to Logfire",
        alias="GOI_LOGFIRE_ENABLED",
    )
    logfire_token: Optional[str] = Field(
        default=None,
        description="Logfire write token",
        alias="GOI_LOGFIRE_TOKEN",
    )
    logfire_service_name: str = Field(
        default="goi-engine",
        description="Service name reported to Logfire",
        alias="GOI_LOGFIRE_SERVICE_NAME",
    )
    logfire_environment: str = Field(
        default="development",
        description="Environment name reported to Logfire",
        alias="GOI_LOGFIRE_ENVIRONMENT",
    )
    logfire_trace_pydantic_ai: bool = Field(
        default=True,
        description="Instrument Pydantic AI planner and intent model calls",
        alias="GOI_LOGFIRE_TRACE_PYDANTIC_AI",
    )


settings = Settings()
