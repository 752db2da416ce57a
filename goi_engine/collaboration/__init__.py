"""Human/AI collaboration: control ownership, events and shared understanding."""

from .control_transfer import MODE_PRESETS, ControlTransferManager
from .models import ControllerState, ControlTransferResult, TransferReason
from .sync import EventBus, EventSink, InMemoryEventSink, StateSync, Subscription

__all__ = [
    "MODE_PRESETS",
    "ControlTransferManager",
    "ControlTransferResult",
    "ControllerState",
    "EventBus",
    "EventSink",
    "InMemoryEventSink",
    "StateSync",
    "Subscription",
    "TransferReason",
]
