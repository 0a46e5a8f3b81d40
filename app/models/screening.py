import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base, JSONType

SCREENING_STATUSES = (
    "pending",
    "scheduled",
    "in_progress",
    "completed",
    "failed",
    "incomplete",
    "cancelled",
)
# Children in these states keep a bulk operation open.
OPEN_SCREENING_STATUSES = ("pending", "scheduled", "in_progress")
TERMINAL_SCREENING_STATUSES = ("completed", "failed", "incomplete", "cancelled")


class Screening(Base):
    __tablename__ = "screenings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("roles.id"))
    candidate_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("candidates.id"))
    bulk_operation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("bulk_operations.id"), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    transcript: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    answers: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(10), nullable=True)
    reasons: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    conversation_turns: Mapped[int | None] = mapped_column(Integer, nullable=True)
    candidate_responded: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    call_connected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    first_response_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    role = relationship("Role", back_populates="screenings")
    candidate = relationship("Candidate", back_populates="screenings")
    bulk_operation = relationship("BulkOperation", back_populates="screenings")
    events = relationship("ScreeningEvent", back_populates="screening")
