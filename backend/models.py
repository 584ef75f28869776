"""
Volunteer Matching Database Models
SQLAlchemy ORM models for needs, members, notifications and matching runs.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from backend.core.config import settings

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunPhase(str, enum.Enum):
    """Phases of a matching run."""

    REQUESTED = "requested"
    RETRIEVING = "retrieving"
    GATING = "gating"
    NOTIFYING = "notifying"
    COMPLETED = "completed"


class RunStatus(str, enum.Enum):
    """Lifecycle status of a matching run row."""

    RUNNING = "running"
    COMPLETED = "completed"
    RETRYABLE = "retryable"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Need(Base):
    """
    Approved organizational need eligible for volunteer matching.

    Created by the need-approval flow; the matching pipeline only reads it,
    apart from filling in a missing embedding before a run starts.
    """

    __tablename__ = "needs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier for the need",
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        doc="Organization that posted the need",
    )
    organization_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="Organization display name used in push messages",
    )
    title: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="Short need title",
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Full need description (embedding source)",
    )
    latitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        doc="Coarsened latitude (2 decimals)",
    )
    longitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        doc="Coarsened longitude (2 decimals)",
    )
    location_name: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Resolved place name (e.g., 'Minneapolis, MN')",
    )
    region: Mapped[Optional[str]] = mapped_column(
        String(8),
        nullable=True,
        doc="State code used for the statewide fallback",
    )
    embedding = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
        doc="Vector embedding of the need text",
    )
    approved_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        doc="Approval timestamp; doubles as the approval version",
    )

    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="need",
        cascade="all, delete-orphan",
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<Need(id={self.id}, title='{self.title[:50]}')>"


class Member(Base):
    """
    Registered volunteer.

    Privacy-first: no PII beyond an anonymous push token, and location is
    only ever stored coarsened to city-level precision.
    """

    __tablename__ = "members"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier for the member",
    )
    push_token: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
        doc="Expo push token",
    )
    searchable_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        doc="Free-text skills and interests (embedding source)",
    )
    embedding = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
        doc="Vector embedding of searchable_text",
    )
    latitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        doc="Coarsened latitude (2 decimals)",
    )
    longitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        doc="Coarsened longitude (2 decimals)",
    )
    location_name: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Resolved place name",
    )
    region: Mapped[Optional[str]] = mapped_column(
        String(8),
        nullable=True,
        doc="State code",
    )
    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether the member accepts notifications at all",
    )
    paused_until: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        doc="Notifications paused until this time",
    )
    notification_count_this_week: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
        doc="Notifications received since the last weekly reset",
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        doc="Registration timestamp",
    )

    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="member",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_members_active_region", "active", "region"),
        Index("ix_members_lat_lng", "latitude", "longitude"),
        Index(
            "ix_members_embedding",
            "embedding",
            postgresql_using="ivfflat",
            postgresql_with={"lists": 100},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, active={self.active})>"


class Notification(Base):
    """
    One push notification about one need to one member.

    The (need_id, member_id) unique constraint is the durable
    de-duplication boundary for retried or repeated runs.
    """

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier for the notification",
    )
    need_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("needs.id", ondelete="CASCADE"),
        nullable=False,
        doc="Need the member was notified about",
    )
    member_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("members.id", ondelete="CASCADE"),
        nullable=False,
        doc="Notified member",
    )
    why_relevant: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="Relevance justification shown with the push",
    )
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Push provider ticket id",
    )
    sent_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        doc="When the provider accepted the push",
    )
    clicked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Member opened the notification",
    )
    responded: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Member responded to the need",
    )

    need: Mapped["Need"] = relationship("Need", back_populates="notifications")
    member: Mapped["Member"] = relationship("Member", back_populates="notifications")

    __table_args__ = (
        UniqueConstraint("need_id", "member_id", name="uq_notifications_need_member"),
        Index("ix_notifications_member_sent_at", "member_id", "sent_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification(need_id={self.need_id}, member_id={self.member_id})>"


class MatchingRun(Base):
    """
    Matching run bookkeeping, one row per (need, approval).

    The unique key makes claiming a run an atomic insert, so duplicate
    triggers cannot start a second concurrent run.
    """

    __tablename__ = "matching_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    need_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("needs.id", ondelete="CASCADE"),
        nullable=False,
    )
    approval_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        doc="Approval version the run belongs to",
    )
    phase: Mapped[RunPhase] = mapped_column(
        Enum(RunPhase, name="run_phase", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RunPhase.REQUESTED,
    )
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="run_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RunStatus.RUNNING,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    candidate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notified_member_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    outcome: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        doc="Serialized terminal event",
    )
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("need_id", "approval_key", name="uq_matching_runs_need_approval"),
    )

    def __repr__(self) -> str:
        return f"<MatchingRun(need_id={self.need_id}, status={self.status.value})>"
