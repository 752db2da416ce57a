from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import CollaborationMode, Controller, _utc_now


class TransferReason(str, Enum):
    user_takeover = "user_takeover"
    user_handback = "user_handback"
    checkpoint_open = "checkpoint_open"
    checkpoint_resolved = "checkpoint_resolved"
    loop_idle = "loop_idle"
    loop_finished = "loop_finished"
    ai_executing = "ai_executing"
    ai_blocked = "ai_blocked"
    ai_error = "ai_error"
    mode_change = "mode_change"


TRANSFER_REASON_MESSAGES = {
    TransferReason.user_takeover: "User took over",
    TransferReason.user_handback: "User handed control back to the AI",
    TransferReason.checkpoint_open: "Waiting for the user at a checkpoint",
    TransferReason.checkpoint_resolved: "Checkpoint resolved, AI continues",
    TransferReason.loop_idle: "Agent is idle",
    TransferReason.loop_finished: "Agent finished the plan",
    TransferReason.ai_executing: "AI is executing a step",
    TransferReason.ai_blocked: "AI is blocked and needs the user",
    TransferReason.ai_error: "AI hit an error",
    TransferReason.mode_change: "Collaboration mode changed",
}


class ControllerState(BaseSchema):
    session_id: str
    controller: Controller = Controller.user
    mode: CollaborationMode = CollaborationMode.assisted
    last_reason: Optional[TransferReason] = None
    updated_at: datetime = Field(default_factory=_utc_now)


class ControlTransferResult(BaseSchema):
    success: bool
    from_controller: Controller = Field(alias="from")
    to_controller: Controller = Field(alias="to")
    reason: TransferReason
    message: str = ""
    error: Optional[str] = None
    transferred_at: datetime = Field(default_factory=_utc_now)
