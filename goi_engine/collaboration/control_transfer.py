from __future__ import annotations

"""Control transfer between the human and the AI.

``ControlTransferManager`` owns the per-session ``ControllerState``:

- ``controller`` (``user`` | ``ai``) is advisory; it tells collaborating UIs
  who is driving right now but is not itself a lock.
- ``mode`` (``manual`` | ``assisted`` | ``auto``) is the single source of truth
  for the checkpoint rule preset. ``set_mode`` swaps the preset of the bound
  ``CheckpointRuleEngine`` in the same call, so the next evaluated item sees
  the new rules while already resolved items are left alone.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from ..checkpoint.rules import MODE_PRESETS, CheckpointRuleEngine
from ..core.errors import ConcurrentModificationError, InputValidationError
from ..schemas.domain import CollaborationMode, Controller, EventSource, GoiEventType
from .models import (
    TRANSFER_REASON_MESSAGES,
    ControllerState,
    ControlTransferResult,
    TransferReason,
)
from .sync import EventBus

logger = logging.getLogger(__name__)

__all__ = ["MODE_PRESETS", "ControlTransferManager"]


def _coerce_mode(mode: Union[CollaborationMode, str]) -> CollaborationMode:
    if isinstance(mode, CollaborationMode):
        return mode
    try:
        return CollaborationMode(str(mode))
    except ValueError:
        raise InputValidationError("mode", f"expected one of manual, assisted, auto; got '{mode}'") from None


def _coerce_controller(target: Union[Controller, str]) -> Controller:
    if isinstance(target, Controller):
        return target
    try:
        return Controller(str(target))
    except ValueError:
        raise InputValidationError("target", f"expected 'user' or 'ai'; got '{target}'") from None


class ControlTransferManager:
    def __init__(
        self,
        session_id: str,
        rules: CheckpointRuleEngine,
        *,
        mode: Union[CollaborationMode, str] = CollaborationMode.assisted,
        events: Optional[EventBus] = None,
    ) -> None:
        self._session_id = session_id
        self._rules = rules
        self._events = events
        self._transferring = False
        initial = _coerce_mode(mode)
        self._state = ControllerState(session_id=session_id, mode=initial)
        self._rules.switch_mode_rules(MODE_PRESETS[initial])

    @property
    def mode(self) -> CollaborationMode:
        return self._state.mode

    def get_controller(self) -> Controller:
        return self._state.controller

    def get_state(self) -> ControllerState:
        return self._state.model_copy()

    def set_mode(self, mode: Union[CollaborationMode, str]) -> ControllerState:
        """Switch collaboration mode and the matching rule preset."""
        new_mode = _coerce_mode(mode)
        old_mode = self._state.mode
        preset = self._rules.switch_mode_rules(MODE_PRESETS[new_mode])
        self._state = self._state.model_copy(
            update={"mode": new_mode, "updated_at": datetime.now(timezone.utc)}
        )
        logger.info(f"Session '{self._session_id}' mode {old_mode.value} -> {new_mode.value} (preset {preset.value})")
        self._publish(
            GoiEventType.mode_changed,
            {"from": old_mode.value, "to": new_mode.value, "preset": preset.value},
            EventSource.user,
        )
        if new_mode == CollaborationMode.manual and self._state.controller == Controller.ai:
            self.transfer_to(Controller.user, TransferReason.mode_change)
        return self.get_state()

    def can_transfer_to(self, target: Union[Controller, str]) -> bool:
        return not (self._state.mode == CollaborationMode.manual and _coerce_controller(target) == Controller.ai)

    def transfer_to(
        self,
        target: Union[Controller, str],
        reason: TransferReason,
        message: Optional[str] = None,
    ) -> ControlTransferResult:
        to = _coerce_controller(target)
        current = self._state.controller

        if self._transferring:
            raise ConcurrentModificationError(self._session_id, "transfer control", current.value)

        if current == to:
            return ControlTransferResult(
                success=True,
                from_controller=current,
                to_controller=to,
                reason=reason,
                message=message or TRANSFER_REASON_MESSAGES[reason],
            )

        if not self.can_transfer_to(to):
            return ControlTransferResult(
                success=False,
                from_controller=current,
                to_controller=to,
                reason=reason,
                error="Control cannot be handed to the AI in manual mode",
            )

        self._transferring = True
        try:
            self._state = self._state.model_copy(
                update={"controller": to, "last_reason": reason, "updated_at": datetime.now(timezone.utc)}
            )
            text = message or TRANSFER_REASON_MESSAGES[reason]
            logger.info(f"Session '{self._session_id}' control {current.value} -> {to.value}: {text}")
            self._publish(
                GoiEventType.control_transferred,
                {"from": current.value, "to": to.value, "reason": reason.value, "message": text},
                EventSource.user if current == Controller.user else EventSource.ai,
            )
            return ControlTransferResult(
                success=True, from_controller=current, to_controller=to, reason=reason, message=text
            )
        finally:
            self._transferring = False

    def user_takeover(self, message: Optional[str] = None) -> ControlTransferResult:
        return self.transfer_to(Controller.user, TransferReason.user_takeover, message)

    def handover_to_ai(self, message: Optional[str] = None) -> ControlTransferResult:
        return self.transfer_to(Controller.ai, TransferReason.user_handback, message)

    def reset(self) -> None:
        self._state = ControllerState(session_id=self._session_id, mode=self._state.mode)

    def _publish(self, event_type: GoiEventType, payload: dict, source: EventSource) -> None:
        if self._events is not None:
            self._events.emit(self._session_id, event_type, payload, source=source)
