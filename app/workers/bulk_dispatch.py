import time
from datetime import datetime, timedelta, timezone
from uuid import UUID

import structlog
from celery import shared_task
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.bulk_operation import BulkOperation
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.screening import OPEN_SCREENING_STATUSES, Screening
from app.services.bulk_counters import DRAINABLE_STATUSES, complete_if_drained
from app.services.call_provider import CallProviderError, build_first_message
from app.services.finalization import fail_screening
from app.services.screening_events import record_event

logger = structlog.get_logger()

HALTED_STATUSES = ("paused", "cancelled", "completed")


@shared_task(name="bulk.dispatch_batch", bind=True, max_retries=3)
def dispatch_bulk_batch(self, bulk_operation_id: str):
    logger.info("bulk_dispatch_start", bulk_operation_id=bulk_operation_id)

    from app.core.database import get_sync_session
    from app.services.call_provider import get_call_provider

    settings = get_settings()
    try:
        provider = get_call_provider()
    except CallProviderError as e:
        logger.error("bulk_dispatch_skip", bulk_operation_id=bulk_operation_id, reason=str(e))
        return {"status": "skipped", "reason": str(e)}

    session = get_sync_session()
    try:
        with provider:
            summary = run_dispatch_pass(session, provider, UUID(bulk_operation_id))
    except Exception as e:
        session.rollback()
        logger.error("bulk_dispatch_error", bulk_operation_id=bulk_operation_id, error=str(e))
        raise self.retry(exc=e, countdown=60)
    finally:
        session.close()

    if summary["has_more"]:
        dispatch_bulk_batch.apply_async(
            args=[bulk_operation_id],
            countdown=settings.BULK_NEXT_BATCH_DELAY_SECONDS,
        )
    logger.info("bulk_dispatch_done", bulk_operation_id=bulk_operation_id, **summary)
    return summary


@shared_task(name="bulk.supervise")
def supervise_bulk_operations():
    from app.core.database import get_sync_session

    session = get_sync_session()
    try:
        result = run_supervisor_sweep(session)
    except Exception as e:
        session.rollback()
        logger.error("bulk_supervise_error", error=str(e))
        raise
    finally:
        session.close()

    for bulk_operation_id in result["resumed"]:
        dispatch_bulk_batch.delay(bulk_operation_id)
    return result


def run_dispatch_pass(
    session: Session,
    provider,
    bulk_operation_id: UUID,
    pacing_seconds: float | None = None,
) -> dict:
    """Dispatch one chunk of an operation's pending screenings.

    The operation status is re-read before every dispatch so pause/cancel
    take effect between calls; a call already placed is never interrupted.
    """
    settings = get_settings()
    pacing = settings.CALL_PACING_SECONDS if pacing_seconds is None else pacing_seconds
    summary = {"dispatched": 0, "failed": 0, "skipped": 0, "errors": 0, "remaining": 0}

    operation = session.get(BulkOperation, bulk_operation_id)
    if not operation:
        logger.error("bulk_operation_not_found", bulk_operation_id=str(bulk_operation_id))
        return {**summary, "halted": "not_found", "has_more": False}
    if operation.status in HALTED_STATUSES:
        logger.info(
            "bulk_dispatch_halted",
            bulk_operation_id=str(bulk_operation_id),
            status=operation.status,
        )
        return {**summary, "halted": operation.status, "has_more": False}

    batch_size = operation.batch_size or settings.BULK_DEFAULT_BATCH_SIZE
    now = datetime.now(timezone.utc)
    session.execute(
        update(BulkOperation)
        .where(BulkOperation.id == bulk_operation_id, BulkOperation.status == "pending")
        .values(status="in_progress", started_at=now)
        .execution_options(synchronize_session=False)
    )
    _heartbeat(session, bulk_operation_id)

    batch = (
        session.execute(
            select(Screening.id)
            .where(
                Screening.bulk_operation_id == bulk_operation_id,
                Screening.status == "pending",
            )
            .order_by(Screening.created_at, Screening.id)
            .limit(batch_size)
        )
        .scalars()
        .all()
    )

    halted = None
    for index, screening_id in enumerate(batch):
        status = session.scalar(
            select(BulkOperation.status).where(BulkOperation.id == bulk_operation_id)
        )
        if status is None or status in ("paused", "cancelled"):
            halted = status or "not_found"
            logger.info(
                "bulk_dispatch_halted",
                bulk_operation_id=str(bulk_operation_id),
                status=halted,
                dispatched=summary["dispatched"],
            )
            break

        try:
            outcome = dispatch_screening(session, provider, screening_id, bulk_operation_id)
        except Exception as e:
            session.rollback()
            logger.error(
                "bulk_screening_dispatch_error",
                screening_id=str(screening_id),
                error=str(e),
            )
            outcome = "errors"
        summary[outcome] += 1
        _heartbeat(session, bulk_operation_id)

        if outcome in ("dispatched", "failed") and pacing and index < len(batch) - 1:
            time.sleep(pacing)

    remaining = session.scalar(
        select(func.count(Screening.id)).where(
            Screening.bulk_operation_id == bulk_operation_id,
            Screening.status == "pending",
        )
    )
    summary["remaining"] = remaining
    if remaining == 0:
        complete_if_drained(session, bulk_operation_id)

    return {**summary, "halted": halted, "has_more": remaining > 0 and halted is None}


def _heartbeat(session: Session, bulk_operation_id: UUID) -> None:
    # The supervisor treats an operation without a recent heartbeat as stalled.
    session.execute(
        update(BulkOperation)
        .where(BulkOperation.id == bulk_operation_id)
        .values(last_dispatched_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    session.commit()


def _configuration_problem(candidate: Candidate | None, role: Role | None) -> str | None:
    if candidate is None:
        return "Candidate not found"
    if role is None:
        return "Role not found"
    if not role.voice_agent_id:
        return "Role has no voice agent configured"
    if not candidate.phone:
        return "Candidate has no phone number"
    return None


def dispatch_screening(
    session: Session, provider, screening_id: UUID, bulk_operation_id: UUID
) -> str:
    screening = session.get(Screening, screening_id)
    if screening is None or screening.status != "pending":
        return "skipped"

    candidate = session.get(Candidate, screening.candidate_id)
    role = session.get(Role, screening.role_id)
    problem = _configuration_problem(candidate, role)
    if problem:
        logger.error("bulk_screening_misconfigured", screening_id=str(screening_id), reason=problem)
        failed = fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="dispatcher",
            summary=problem,
            expected_statuses=("pending",),
        )
        return "failed" if failed else "skipped"

    agent_id = role.voice_agent_id
    phone = candidate.phone
    metadata = {
        "screening_id": str(screening_id),
        "candidate_id": str(candidate.id),
        "role_id": str(role.id),
        "candidate_name": candidate.name,
    }
    first_message = build_first_message(candidate, role)

    # Claim before calling so concurrent passes never dial the same candidate twice.
    claimed = (
        session.execute(
            update(Screening)
            .where(Screening.id == screening_id, Screening.status == "pending")
            .values(
                status="in_progress",
                attempts=Screening.attempts + 1,
                started_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        == 1
    )
    session.commit()
    if not claimed:
        return "skipped"

    try:
        session_id = provider.initiate_call(
            agent_id, phone, metadata=metadata, first_message=first_message
        )
    except CallProviderError as e:
        logger.warning(
            "bulk_call_initiate_failed",
            screening_id=str(screening_id),
            status_code=e.status_code,
            error=str(e),
        )
        fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="dispatcher",
            summary=f"Call could not be initiated: {e}",
            require_no_session=True,
        )
        return "failed"

    session.execute(
        update(Screening)
        .where(
            Screening.id == screening_id,
            Screening.status == "in_progress",
            Screening.session_id.is_(None),
        )
        .values(session_id=session_id)
        .execution_options(synchronize_session=False)
    )
    record_event(session, screening_id, "call_initiated", {"session_id": session_id, "source": "bulk"})
    session.commit()
    logger.info("bulk_call_initiated", screening_id=str(screening_id), session_id=session_id)
    return "dispatched"


def run_supervisor_sweep(session: Session, now: datetime | None = None) -> dict:
    """Restart stalled immediate operations and close drained ones."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    stalled_before = now - timedelta(seconds=settings.BULK_STALL_SECONDS)

    has_pending = (
        select(Screening.id)
        .where(Screening.bulk_operation_id == BulkOperation.id, Screening.status == "pending")
        .exists()
    )
    last_activity = func.coalesce(BulkOperation.last_dispatched_at, BulkOperation.started_at)
    stalled = (
        session.execute(
            select(BulkOperation.id).where(
                BulkOperation.status == "in_progress",
                BulkOperation.scheduling_type == "immediate",
                or_(last_activity.is_(None), last_activity < stalled_before),
                has_pending,
            )
        )
        .scalars()
        .all()
    )
    for bulk_operation_id in stalled:
        logger.warning("bulk_operation_stalled", bulk_operation_id=str(bulk_operation_id))

    has_open = (
        select(Screening.id)
        .where(
            Screening.bulk_operation_id == BulkOperation.id,
            Screening.status.in_(OPEN_SCREENING_STATUSES),
        )
        .exists()
    )
    drained = (
        session.execute(
            select(BulkOperation.id).where(
                BulkOperation.status.in_(DRAINABLE_STATUSES), ~has_open
            )
        )
        .scalars()
        .all()
    )
    completed = [str(op_id) for op_id in drained if complete_if_drained(session, op_id)]

    return {"resumed": [str(op_id) for op_id in stalled], "completed": completed}
