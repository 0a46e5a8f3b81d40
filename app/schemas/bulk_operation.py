from datetime import datetime, timezone
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BulkScreeningCreate(BaseModel):
    role_id: UUID
    candidate_ids: list[UUID] = Field(min_length=1)
    scheduling_type: Literal["immediate", "scheduled"] = "immediate"
    scheduled_time: datetime | None = None
    batch_size: int | None = Field(default=None, ge=1, le=100)


class BulkScreeningResponse(BaseModel):
    id: UUID
    role_id: UUID
    scheduling_type: str
    scheduled_time: datetime | None
    batch_size: int
    total_count: int
    completed_count: int
    failed_count: int
    status: str
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_validator("scheduled_time", "created_at", "started_at", "completed_at")
    @classmethod
    def assume_utc(cls, value):
        return as_utc(value)


class BulkScreeningItem(BaseModel):
    screening_id: UUID
    candidate_id: UUID
    candidate_name: str
    status: str
    attempts: int
    score: float | None
    outcome: str | None


class BulkScreeningProgress(BaseModel):
    pending: int = 0
    scheduled: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    incomplete: int = 0
    cancelled: int = 0


class BulkScreeningDetail(BulkScreeningResponse):
    progress: BulkScreeningProgress
    screenings: list[BulkScreeningItem]
