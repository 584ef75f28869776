"""Matching schema with pgvector support

Revision ID: 001
Revises:
Create Date: 2026-10-12

Creates the tables used by the match-and-notify pipeline:
- needs: Approved organizational needs with vector embeddings
- members: Volunteers with coarsened locations and weekly counters
- notifications: One row per (need, member) push
- matching_runs: Run claims keyed by (need, approval)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    """Create matching schema."""

    # Enable pgvector extension
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # ==========================================================================
    # Create needs table
    # ==========================================================================
    op.create_table(
        "needs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_name", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_name", sa.Text(), nullable=True),
        sa.Column("region", sa.String(8), nullable=True),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column(
            "approved_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # ==========================================================================
    # Create members table
    # ==========================================================================
    op.create_table(
        "members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("push_token", sa.Text(), nullable=False, unique=True),
        sa.Column("searchable_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_name", sa.Text(), nullable=True),
        sa.Column("region", sa.String(8), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("paused_until", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "notification_count_this_week",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_index("ix_members_active_region", "members", ["active", "region"])
    op.create_index("ix_members_lat_lng", "members", ["latitude", "longitude"])

    # Vector similarity index for members (IVFFlat)
    op.execute(
        """
        CREATE INDEX ix_members_embedding
        ON members
        USING ivfflat (embedding vector_cosine_ops)
        WITH (lists = 100)
        """
    )

    # ==========================================================================
    # Create notifications table
    # ==========================================================================
    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "need_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("needs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "member_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("why_relevant", sa.Text(), nullable=False),
        sa.Column("provider_message_id", sa.Text(), nullable=True),
        sa.Column(
            "sent_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("clicked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("responded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("need_id", "member_id", name="uq_notifications_need_member"),
    )

    op.create_index(
        "ix_notifications_member_sent_at",
        "notifications",
        ["member_id", "sent_at"],
    )

    # ==========================================================================
    # Create matching_runs table
    # ==========================================================================
    run_phase = postgresql.ENUM(
        "requested", "retrieving", "gating", "notifying", "completed",
        name="run_phase",
    )
    run_status = postgresql.ENUM(
        "running", "completed", "retryable",
        name="run_status",
    )

    op.create_table(
        "matching_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "need_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("needs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("approval_key", sa.String(64), nullable=False),
        sa.Column("phase", run_phase, nullable=False, server_default="requested"),
        sa.Column("status", run_status, nullable=False, server_default="running"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("candidate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "notified_member_ids",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("outcome", postgresql.JSONB(), nullable=True),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("need_id", "approval_key", name="uq_matching_runs_need_approval"),
    )

    op.create_index("ix_matching_runs_status", "matching_runs", ["status"])


def downgrade() -> None:
    """Drop matching tables, enums and the vector extension."""

    # Drop tables in reverse order of creation (due to foreign keys)
    op.drop_table("matching_runs")
    op.drop_table("notifications")
    op.drop_table("members")
    op.drop_table("needs")

    op.execute("DROP TYPE IF EXISTS run_status")
    op.execute("DROP TYPE IF EXISTS run_phase")

    op.execute("DROP EXTENSION IF EXISTS vector")
