"""bulk screening tables

Revision ID: d1e2f3a4b5c6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "d1e2f3a4b5c6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "roles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("location", sa.String(255), server_default="", nullable=False),
        sa.Column("voice_agent_id", sa.String(255), nullable=True),
        sa.Column("call_window", postgresql.JSONB(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "candidates",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        _created_at(),
    )

    op.create_table(
        "bulk_operations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("role_id", sa.Uuid(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("scheduling_type", sa.String(20), server_default="immediate", nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("batch_size", sa.Integer(), server_default="10", nullable=False),
        sa.Column("total_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("completed_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failed_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", sa.String(50), server_default="pending", nullable=False),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "completed_count + failed_count <= total_count",
            name="ck_bulk_operations_counters_within_total",
        ),
    )
    op.create_index("ix_bulk_operations_status", "bulk_operations", ["status"])

    op.create_table(
        "screenings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("role_id", sa.Uuid(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("candidate_id", sa.Uuid(), sa.ForeignKey("candidates.id"), nullable=False),
        sa.Column(
            "bulk_operation_id", sa.Uuid(), sa.ForeignKey("bulk_operations.id"), nullable=True
        ),
        sa.Column("status", sa.String(50), server_default="pending", nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("transcript", postgresql.JSONB(), nullable=True),
        sa.Column("answers", postgresql.JSONB(), nullable=True),
        sa.Column("ai_summary", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("outcome", sa.String(10), nullable=True),
        sa.Column("reasons", postgresql.JSONB(), nullable=True),
        sa.Column("conversation_turns", sa.Integer(), nullable=True),
        sa.Column("candidate_responded", sa.Boolean(), nullable=True),
        sa.Column("call_connected", sa.Boolean(), nullable=True),
        sa.Column("first_response_time_seconds", sa.Integer(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("recording_url", sa.String(1000), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_screenings_bulk_operation_id", "screenings", ["bulk_operation_id"])
    op.create_index("ix_screenings_status", "screenings", ["status"])
    op.create_index("ix_screenings_session_id", "screenings", ["session_id"])
    # Reconciler sweep: in-progress screenings ordered by start time
    op.create_index(
        "ix_screenings_in_progress_started_at",
        "screenings",
        ["started_at"],
        postgresql_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        "scheduled_calls",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("screening_id", sa.Uuid(), sa.ForeignKey("screenings.id"), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(50), server_default="pending", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_scheduled_calls_screening_id", "scheduled_calls", ["screening_id"])
    op.create_index("ix_scheduled_calls_scheduled_time", "scheduled_calls", ["scheduled_time"])
    op.create_index("ix_scheduled_calls_status", "scheduled_calls", ["status"])

    op.create_table(
        "screening_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("screening_id", sa.Uuid(), sa.ForeignKey("screenings.id"), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_screening_events_screening_id", "screening_events", ["screening_id"])

    op.create_table(
        "webhook_dead_letters",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_webhook_dead_letters_session_id", "webhook_dead_letters", ["session_id"])


def downgrade() -> None:
    op.drop_table("webhook_dead_letters")
    op.drop_table("screening_events")
    op.drop_table("scheduled_calls")
    op.drop_table("screenings")
    op.drop_table("bulk_operations")
    op.drop_table("candidates")
    op.drop_table("roles")
