"""
Matching Agent Pydantic Models
Data models for candidate retrieval, relevance gating and throttling.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def _as_float_list(value: Any) -> Optional[list[float]]:
    # pgvector hands back numpy arrays; keep models plain-Python
    if value is None:
        return None
    return [float(v) for v in value]


class NeedData(BaseModel):
    """
    Immutable snapshot of an approved need, taken when a run starts.
    """

    model_config = ConfigDict(frozen=True)

    need_id: UUID = Field(..., description="Need identifier")
    organization_id: Optional[UUID] = Field(default=None, description="Posting organization")
    organization_name: str = Field(..., description="Organization display name")
    title: str = Field(..., description="Need title")
    description: str = Field(default="", description="Need description")
    latitude: Optional[float] = Field(default=None, description="Coarsened latitude")
    longitude: Optional[float] = Field(default=None, description="Coarsened longitude")
    region: Optional[str] = Field(default=None, description="State code")
    embedding: Optional[list[float]] = Field(default=None, description="Need embedding")
    approved_at: Optional[datetime] = Field(default=None, description="Approval timestamp")

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def approval_key(self) -> str:
        """Approval version used to de-duplicate runs."""
        if self.approved_at is None:
            return "unversioned"
        approved_at = self.approved_at
        if approved_at.tzinfo is not None:
            approved_at = approved_at.astimezone(timezone.utc).replace(tzinfo=None)
        return approved_at.isoformat()

    def to_embedding_text(self) -> str:
        parts = [f"Title: {self.title}"]
        if self.organization_name:
            parts.append(f"Organization: {self.organization_name}")
        if self.description:
            desc = self.description
            if len(desc) > 4000:
                desc = desc[:4000] + "..."
            parts.append(f"Description: {desc}")
        return "\n".join(parts)

    @classmethod
    def from_record(cls, need: Any) -> "NeedData":
        """Build a snapshot from a Need ORM row."""
        return cls(
            need_id=need.id,
            organization_id=need.organization_id,
            organization_name=need.organization_name,
            title=need.title,
            description=need.description or "",
            latitude=need.latitude,
            longitude=need.longitude,
            region=need.region,
            embedding=_as_float_list(need.embedding),
            approved_at=need.approved_at,
        )


class EligibleMember(BaseModel):
    """Member row that passed the storage eligibility filter."""

    member_id: UUID
    push_token: str
    embedding: list[float]
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    region: Optional[str] = None


class MatchCandidate(BaseModel):
    """
    Eligible member ranked for a need.

    distance_km is None under the statewide fallback.
    """

    model_config = ConfigDict(frozen=True)

    member_id: UUID = Field(..., description="Member identifier")
    push_token: str = Field(..., description="Expo push token")
    similarity: float = Field(..., description="1 - cosine distance")
    distance_km: Optional[float] = Field(default=None, ge=0.0, description="Haversine distance")


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RelevanceAssessment(BaseModel):
    """Relevance gate verdict for one candidate."""

    model_config = ConfigDict(frozen=True)

    is_relevant: bool = Field(..., description="Whether to notify the member")
    justification: str = Field(..., description="Text shown to the member")
    confidence: ConfidenceLevel = Field(..., description="Similarity band")


class ReservationOutcome(str, Enum):
    """Result of a weekly throttle reservation."""

    RESERVED = "reserved"
    CAP_REACHED = "cap_reached"
