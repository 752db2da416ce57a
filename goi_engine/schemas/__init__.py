"""Domain schemas shared across the GOI engine.

``domain`` holds the state owned by the agent loop (TODO lists, checkpoints,
events, the understanding snapshot); ``intent`` holds the data produced by the
intent understanding pipeline.
"""

from .base import BaseSchema, ExternalSchema
from .domain import (
    AgentLoopStatus,
    Checkpoint,
    CheckpointConfig,
    CheckpointOption,
    CheckpointType,
    CollaborationMode,
    Controller,
    EventSource,
    GoiEvent,
    GoiEventType,
    GoiOperation,
    OperationType,
    ResourceRef,
    RiskLevel,
    SelectedResource,
    Session,
    StateAction,
    TodoCategory,
    TodoItem,
    TodoItemStatus,
    TodoList,
    Understanding,
)
from .intent import (
    ClarificationRequest,
    ClarificationResponse,
    ClarificationState,
    ClarificationType,
    ConfidenceAction,
    ConfidenceResult,
    EntityMatch,
    EntityType,
    IntentCategory,
    IntentContext,
    IntentParseResult,
    ParsedIntent,
    ResourceType,
)

__all__ = [
    "BaseSchema",
    "ExternalSchema",
    "AgentLoopStatus",
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointOption",
    "CheckpointType",
    "CollaborationMode",
    "Controller",
    "EventSource",
    "GoiEvent",
    "GoiEventType",
    "GoiOperation",
    "OperationType",
    "ResourceRef",
    "RiskLevel",
    "SelectedResource",
    "Session",
    "StateAction",
    "TodoCategory",
    "TodoItem",
    "TodoItemStatus",
    "TodoList",
    "Understanding",
    "ClarificationRequest",
    "ClarificationResponse",
    "ClarificationState",
    "ClarificationType",
    "ConfidenceAction",
    "ConfidenceResult",
    "EntityMatch",
    "EntityType",
    "IntentCategory",
    "IntentContext",
    "IntentParseResult",
    "ParsedIntent",
    "ResourceType",
]
