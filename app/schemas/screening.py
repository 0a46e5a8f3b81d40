from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, field_validator

from app.schemas.bulk_operation import as_utc


class ScreeningCreate(BaseModel):
    role_id: UUID
    candidate_id: UUID
    scheduled_at: datetime | None = None


class ScreeningResponse(BaseModel):
    id: UUID
    role_id: UUID
    candidate_id: UUID
    bulk_operation_id: UUID | None
    status: str
    attempts: int
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    session_id: str | None
    transcript: Any = None
    answers: Any = None
    ai_summary: str | None
    score: float | None
    outcome: str | None
    reasons: list | None
    conversation_turns: int | None
    candidate_responded: bool | None
    call_connected: bool | None
    first_response_time_seconds: int | None
    duration_seconds: int | None
    recording_url: str | None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("scheduled_at", "started_at", "completed_at", "created_at")
    @classmethod
    def assume_utc(cls, value):
        return as_utc(value)


class ScreeningEventResponse(BaseModel):
    id: UUID
    event_type: str
    event_data: dict | None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, value):
        return as_utc(value)
