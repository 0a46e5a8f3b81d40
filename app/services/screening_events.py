"""Screening lifecycle log: one row per transition, kept for audit."""

from uuid import UUID

from app.models.screening_event import ScreeningEvent


def record_event(db, screening_id: UUID, event_type: str, data: dict | None = None) -> None:
    """Stage an event on ``db`` (sync or async session); the caller commits."""
    db.add(
        ScreeningEvent(
            screening_id=screening_id,
            event_type=event_type,
            event_data=data,
        )
    )
