"""
Matching Event Models
Pydantic models for Redis Streams event payloads
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NoMatchReason(str, Enum):
    """Why a run finished without notifying anyone."""

    NEED_NOT_FOUND = "need_not_found"
    NEED_HAS_NO_EMBEDDING = "need_has_no_embedding"
    NO_CANDIDATES = "no_candidates"
    NONE_RELEVANT = "none_relevant"
    NONE_NOTIFIED = "none_notified"
    RETRIEVAL_UNAVAILABLE = "retrieval_unavailable"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier for this event",
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event was created",
    )
    version: str = Field(
        default="1.0",
        description="Event schema version for backward compatibility",
    )


class FindMatchesRequestedEvent(BaseEvent):
    """
    Raised once a need is approved; delivered at-least-once.

    Published to: matching:requested stream
    """

    need_id: UUID = Field(..., description="Approved need to match")
    approval_key: Optional[str] = Field(
        default=None,
        description="Approval version; defaults to the need's approved_at",
    )
    retrigger: bool = Field(
        default=False,
        description="Run again even if this approval already completed",
    )


class MatchesFoundEvent(BaseEvent):
    """
    Terminal event for a run that notified at least one member.

    Published to: matching:completed stream
    """

    need_id: UUID = Field(..., description="Matched need")
    notified_member_ids: list[UUID] = Field(
        default_factory=list,
        description="Members notified (or already notified) in similarity order",
    )
    notified_count: int = Field(..., ge=1, description="Number of notified members")
    candidate_count: int = Field(
        default=0,
        ge=0,
        description="Candidates returned by retrieval",
    )
    partial: bool = Field(
        default=False,
        description="True when the run deadline cut the run short",
    )


class NoMatchesFoundEvent(BaseEvent):
    """
    Terminal event for a run that notified nobody.

    Published to: matching:completed stream
    """

    need_id: UUID = Field(..., description="Need without matches")
    reason: NoMatchReason = Field(..., description="Why nobody was notified")
    candidate_count: int = Field(default=0, ge=0)
    retryable: bool = Field(
        default=False,
        description="True when a redelivered trigger may run again",
    )


class DeadLetterEvent(BaseEvent):
    """
    Event for messages that failed processing and moved to DLQ.

    Published to: dlq:<original_stream> stream
    """

    original_stream: str = Field(..., description="Original stream the message came from")
    original_message_id: str = Field(..., description="Original message ID in Redis")
    original_payload: dict = Field(..., description="Original event payload")
    error_message: str = Field(..., description="Error message from failed processing")
    error_type: str = Field(..., description="Exception type that caused the failure")
    failure_count: int = Field(..., description="Number of processing attempts")
