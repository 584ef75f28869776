"""
Notification Delivery Agent
Idempotent push dispatch for matched volunteers.
"""
from agents.delivery.channels import BaseChannel, ExpoPushChannel
from agents.delivery.dispatcher import NotificationDispatcher, build_push_message
from agents.delivery.models import (
    PUSH_TITLE,
    DispatchOutcome,
    DispatchResult,
    PushMessage,
    PushReceipt,
)

__all__ = [
    # Dispatcher
    "NotificationDispatcher",
    "build_push_message",
    # Channels
    "BaseChannel",
    "ExpoPushChannel",
    # Models
    "PUSH_TITLE",
    "DispatchOutcome",
    "DispatchResult",
    "PushMessage",
    "PushReceipt",
]
