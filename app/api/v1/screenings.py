from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.scheduled_call import ScheduledCall
from app.models.screening import Screening
from app.models.screening_event import ScreeningEvent
from app.schemas.bulk_operation import as_utc
from app.schemas.screening import ScreeningCreate, ScreeningEventResponse, ScreeningResponse
from app.services.screening_events import record_event

logger = structlog.get_logger()

router = APIRouter(prefix="/screenings", tags=["screenings"])


@router.post("", response_model=ScreeningResponse, status_code=status.HTTP_201_CREATED)
async def create_screening(
    body: ScreeningCreate,
    db: AsyncSession = Depends(get_db),
):
    role = await db.get(Role, body.role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    if not role.voice_agent_id:
        raise HTTPException(status_code=400, detail="Role has no voice agent configured")

    candidate = await db.get(Candidate, body.candidate_id)
    if not candidate:
        raise HTTPException(status_code=404, detail="Candidate not found")
    if not candidate.phone:
        raise HTTPException(status_code=400, detail="Candidate has no phone number")

    now = datetime.now(timezone.utc)
    scheduled_at = as_utc(body.scheduled_at) or now

    screening = Screening(
        role_id=role.id,
        candidate_id=candidate.id,
        status="scheduled",
        attempts=0,
        scheduled_at=scheduled_at,
    )
    db.add(screening)
    await db.flush()
    db.add(ScheduledCall(screening_id=screening.id, scheduled_time=scheduled_at))
    record_event(db, screening.id, "scheduled", {"scheduled_at": scheduled_at.isoformat()})
    await db.commit()
    await db.refresh(screening)
    logger.info(
        "screening_scheduled",
        screening_id=str(screening.id),
        scheduled_at=scheduled_at.isoformat(),
    )

    if scheduled_at <= now:
        from app.workers.scheduled_calls import process_scheduled_calls

        process_scheduled_calls.delay()

    return ScreeningResponse.model_validate(screening)


@router.get("/{screening_id}", response_model=ScreeningResponse)
async def get_screening(
    screening_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    screening = await db.get(Screening, screening_id)
    if not screening:
        raise HTTPException(status_code=404, detail="Screening not found")
    return ScreeningResponse.model_validate(screening)


@router.get("/{screening_id}/events", response_model=list[ScreeningEventResponse])
async def list_screening_events(
    screening_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    if not await db.get(Screening, screening_id):
        raise HTTPException(status_code=404, detail="Screening not found")

    result = await db.execute(
        select(ScreeningEvent)
        .where(ScreeningEvent.screening_id == screening_id)
        .order_by(ScreeningEvent.created_at)
    )
    return [ScreeningEventResponse.model_validate(e) for e in result.scalars().all()]
