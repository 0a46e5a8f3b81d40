from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.models.bulk_operation import BulkOperation
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.scheduled_call import ScheduledCall
from app.models.screening import Screening
from app.schemas.bulk_operation import (
    BulkScreeningCreate,
    BulkScreeningDetail,
    BulkScreeningItem,
    BulkScreeningProgress,
    BulkScreeningResponse,
    as_utc,
)
from app.services.bulk_counters import recompute_counters_stmt
from app.services.screening_events import record_event

logger = structlog.get_logger()

router = APIRouter(prefix="/bulk-screenings", tags=["bulk-screenings"])
settings = get_settings()

# Result fields wiped when a failed screening is queued again.
RESET_FIELDS = {
    "session_id": None,
    "started_at": None,
    "completed_at": None,
    "transcript": None,
    "answers": None,
    "ai_summary": None,
    "score": None,
    "outcome": None,
    "reasons": None,
    "conversation_turns": None,
    "candidate_responded": None,
    "call_connected": None,
    "first_response_time_seconds": None,
    "duration_seconds": None,
    "recording_url": None,
}


async def _get_operation(db: AsyncSession, bulk_operation_id: UUID) -> BulkOperation:
    operation = await db.get(BulkOperation, bulk_operation_id, populate_existing=True)
    if not operation:
        raise HTTPException(status_code=404, detail="Bulk operation not found")
    return operation


def _enqueue_dispatch(bulk_operation_id: UUID) -> None:
    from app.workers.bulk_dispatch import dispatch_bulk_batch

    dispatch_bulk_batch.delay(str(bulk_operation_id))


@router.post("", response_model=BulkScreeningResponse, status_code=status.HTTP_201_CREATED)
async def create_bulk_screening(
    body: BulkScreeningCreate,
    db: AsyncSession = Depends(get_db),
):
    candidate_ids = list(dict.fromkeys(body.candidate_ids))
    if len(candidate_ids) > settings.BULK_MAX_CANDIDATES:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.BULK_MAX_CANDIDATES} candidates per bulk screening",
        )
    scheduled_time = as_utc(body.scheduled_time)
    if body.scheduling_type == "scheduled" and scheduled_time is None:
        raise HTTPException(status_code=400, detail="scheduled_time is required for scheduled mode")

    role = await db.get(Role, body.role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    if not role.voice_agent_id:
        raise HTTPException(status_code=400, detail="Role has no voice agent configured")

    result = await db.execute(select(Candidate).where(Candidate.id.in_(candidate_ids)))
    candidates = {c.id: c for c in result.scalars().all()}
    missing = [str(cid) for cid in candidate_ids if cid not in candidates]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={"message": "Candidates not found", "candidate_ids": missing},
        )
    without_phone = [str(cid) for cid in candidate_ids if not candidates[cid].phone]
    if without_phone:
        raise HTTPException(
            status_code=400,
            detail={"message": "Candidates without phone number", "candidate_ids": without_phone},
        )

    operation = BulkOperation(
        role_id=role.id,
        scheduling_type=body.scheduling_type,
        scheduled_time=scheduled_time,
        batch_size=body.batch_size or settings.BULK_DEFAULT_BATCH_SIZE,
        total_count=len(candidate_ids),
        completed_count=0,
        failed_count=0,
        status="pending",
    )
    db.add(operation)
    await db.flush()

    scheduled = body.scheduling_type == "scheduled"
    for candidate_id in candidate_ids:
        screening = Screening(
            role_id=role.id,
            candidate_id=candidate_id,
            bulk_operation_id=operation.id,
            status="scheduled" if scheduled else "pending",
            attempts=0,
            scheduled_at=scheduled_time,
        )
        db.add(screening)
        if scheduled:
            await db.flush()
            db.add(ScheduledCall(screening_id=screening.id, scheduled_time=scheduled_time))

    await db.commit()
    logger.info(
        "bulk_screening_created",
        bulk_operation_id=str(operation.id),
        total=operation.total_count,
        scheduling_type=operation.scheduling_type,
    )

    if not scheduled:
        _enqueue_dispatch(operation.id)

    return BulkScreeningResponse.model_validate(operation)


@router.get("", response_model=list[BulkScreeningResponse])
async def list_bulk_screenings(
    status_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(BulkOperation).order_by(BulkOperation.created_at.desc())
    if status_filter:
        query = query.where(BulkOperation.status == status_filter)
    result = await db.execute(query.limit(min(limit, 200)).offset(offset))
    return [BulkScreeningResponse.model_validate(op) for op in result.scalars().all()]


@router.get("/{bulk_operation_id}", response_model=BulkScreeningDetail)
async def get_bulk_screening(
    bulk_operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    operation = await _get_operation(db, bulk_operation_id)

    result = await db.execute(
        select(Screening, Candidate.name)
        .join(Candidate, Candidate.id == Screening.candidate_id)
        .where(Screening.bulk_operation_id == bulk_operation_id)
        .order_by(Screening.created_at, Screening.id)
    )
    items = []
    progress = BulkScreeningProgress()
    for screening, candidate_name in result.all():
        if hasattr(progress, screening.status):
            setattr(progress, screening.status, getattr(progress, screening.status) + 1)
        items.append(
            BulkScreeningItem(
                screening_id=screening.id,
                candidate_id=screening.candidate_id,
                candidate_name=candidate_name,
                status=screening.status,
                attempts=screening.attempts,
                score=screening.score,
                outcome=screening.outcome,
            )
        )

    base = BulkScreeningResponse.model_validate(operation)
    return BulkScreeningDetail(**base.model_dump(), progress=progress, screenings=items)


@router.post("/{bulk_operation_id}/pause", response_model=BulkScreeningResponse)
async def pause_bulk_screening(
    bulk_operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    operation = await _get_operation(db, bulk_operation_id)
    result = await db.execute(
        update(BulkOperation)
        .where(
            BulkOperation.id == bulk_operation_id,
            BulkOperation.status.in_(("pending", "in_progress")),
        )
        .values(status="paused")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise HTTPException(status_code=409, detail=f"Cannot pause a {operation.status} operation")
    await db.commit()
    logger.info("bulk_screening_paused", bulk_operation_id=str(bulk_operation_id))
    return BulkScreeningResponse.model_validate(await _get_operation(db, bulk_operation_id))


@router.post("/{bulk_operation_id}/resume", response_model=BulkScreeningResponse)
async def resume_bulk_screening(
    bulk_operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    operation = await _get_operation(db, bulk_operation_id)
    result = await db.execute(
        update(BulkOperation)
        .where(BulkOperation.id == bulk_operation_id, BulkOperation.status == "paused")
        .values(status="in_progress")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise HTTPException(status_code=409, detail=f"Cannot resume a {operation.status} operation")
    await db.commit()
    logger.info("bulk_screening_resumed", bulk_operation_id=str(bulk_operation_id))

    if operation.scheduling_type == "immediate":
        _enqueue_dispatch(bulk_operation_id)
    return BulkScreeningResponse.model_validate(await _get_operation(db, bulk_operation_id))


@router.post("/{bulk_operation_id}/cancel", response_model=BulkScreeningResponse)
async def cancel_bulk_screening(
    bulk_operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    operation = await _get_operation(db, bulk_operation_id)
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(BulkOperation)
        .where(
            BulkOperation.id == bulk_operation_id,
            BulkOperation.status.not_in(("cancelled", "completed")),
        )
        .values(status="cancelled", completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise HTTPException(status_code=409, detail=f"Cannot cancel a {operation.status} operation")

    result = await db.execute(
        select(Screening.id).where(
            Screening.bulk_operation_id == bulk_operation_id,
            Screening.status.in_(("pending", "scheduled")),
        )
    )
    open_ids = list(result.scalars().all())
    if open_ids:
        await db.execute(
            update(Screening)
            .where(Screening.id.in_(open_ids), Screening.status.in_(("pending", "scheduled")))
            .values(status="cancelled", completed_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(ScheduledCall)
            .where(ScheduledCall.screening_id.in_(open_ids), ScheduledCall.status == "pending")
            .values(status="failed", last_error="Bulk operation cancelled")
            .execution_options(synchronize_session=False)
        )
        for screening_id in open_ids:
            record_event(db, screening_id, "cancelled", {"source": "operator"})
    await db.commit()
    logger.info(
        "bulk_screening_cancelled",
        bulk_operation_id=str(bulk_operation_id),
        cancelled_screenings=len(open_ids),
    )
    return BulkScreeningResponse.model_validate(await _get_operation(db, bulk_operation_id))


@router.post("/{bulk_operation_id}/retry-failed", response_model=BulkScreeningResponse)
async def retry_failed_screenings(
    bulk_operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    operation = await _get_operation(db, bulk_operation_id)
    if operation.status not in ("in_progress", "completed"):
        raise HTTPException(
            status_code=409, detail=f"Cannot retry screenings of a {operation.status} operation"
        )

    result = await db.execute(
        select(Screening.id).where(
            Screening.bulk_operation_id == bulk_operation_id,
            Screening.status == "failed",
        )
    )
    retry_ids = list(result.scalars().all())
    if not retry_ids:
        raise HTTPException(status_code=409, detail="No failed screenings to retry")

    await db.execute(
        update(Screening)
        .where(Screening.id.in_(retry_ids), Screening.status == "failed")
        .values(status="pending", attempts=0, **RESET_FIELDS)
        .execution_options(synchronize_session=False)
    )
    for screening_id in retry_ids:
        record_event(db, screening_id, "retry_requested", {"source": "operator"})
    await db.execute(recompute_counters_stmt(bulk_operation_id))
    await db.execute(
        update(BulkOperation)
        .where(BulkOperation.id == bulk_operation_id)
        .values(status="in_progress", completed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(
        "bulk_screening_retry_failed",
        bulk_operation_id=str(bulk_operation_id),
        retried=len(retry_ids),
    )

    _enqueue_dispatch(bulk_operation_id)
    return BulkScreeningResponse.model_validate(await _get_operation(db, bulk_operation_id))
