"""
Notification Delivery Models
Pydantic models for push payloads and dispatch outcomes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

PUSH_TITLE = "You might be interested in this"


class PushMessage(BaseModel):
    """Expo push message."""

    to: str = Field(..., description="Expo push token")
    title: str = Field(..., max_length=100)
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    sound: Optional[str] = "default"


class PushReceipt(BaseModel):
    """Provider acceptance of one push message."""

    provider_message_id: Optional[str] = None
    accepted_at: datetime


class DispatchOutcome(str, Enum):
    SENT = "sent"
    ALREADY_SENT = "already_sent"
    FAILED = "failed"


class DispatchResult(BaseModel):
    """Result of dispatching one notification."""

    outcome: DispatchOutcome
    need_id: UUID
    member_id: UUID
    notification_id: Optional[UUID] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def counts_as_notified(self) -> bool:
        return self.outcome in (DispatchOutcome.SENT, DispatchOutcome.ALREADY_SENT)
