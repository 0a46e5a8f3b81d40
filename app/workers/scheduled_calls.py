from datetime import datetime, timedelta, timezone
from uuid import UUID

import structlog
from celery import shared_task
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.bulk_operation import BulkOperation
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.scheduled_call import ScheduledCall
from app.models.screening import Screening
from app.services.call_provider import CallProviderError, build_first_message
from app.services.call_window import is_within_call_window, next_window_start
from app.services.finalization import fail_screening
from app.services.screening_events import record_event

logger = structlog.get_logger()

DISPATCHABLE_STATUSES = ("scheduled", "pending")


@shared_task(name="scheduled_calls.process")
def process_scheduled_calls():
    from app.core.database import get_sync_session
    from app.services.call_provider import get_call_provider

    try:
        provider = get_call_provider()
    except CallProviderError as e:
        logger.error("scheduled_calls_skip", reason=str(e))
        return {"status": "skipped", "reason": str(e)}

    session = get_sync_session()
    try:
        with provider:
            summary = run_scheduled_sweep(session, provider)
    except Exception as e:
        session.rollback()
        logger.error("scheduled_calls_error", error=str(e))
        raise
    finally:
        session.close()

    logger.info("scheduled_calls_done", **summary)
    return summary


def retry_delay(retry_count: int) -> timedelta:
    """Backoff before the next attempt once ``retry_count`` failures are recorded."""
    base = get_settings().SCHEDULED_CALL_RETRY_BASE_MINUTES
    return timedelta(minutes=base * 2**retry_count)


def _due_clause(now: datetime):
    return or_(ScheduledCall.next_retry_at.is_(None), ScheduledCall.next_retry_at <= now)


def run_scheduled_sweep(session: Session, provider, now: datetime | None = None) -> dict:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    summary = {"initiated": 0, "retrying": 0, "failed": 0, "deferred": 0, "skipped": 0, "errors": 0}

    due = (
        session.execute(
            select(ScheduledCall.id)
            .where(
                ScheduledCall.status == "pending",
                ScheduledCall.scheduled_time <= now,
                _due_clause(now),
            )
            .order_by(ScheduledCall.scheduled_time)
            .limit(settings.SCHEDULED_CALLS_PAGE_SIZE)
        )
        .scalars()
        .all()
    )
    logger.info("scheduled_calls_sweep", due=len(due))

    for call_id in due:
        try:
            outcome = process_scheduled_call(session, provider, call_id, now)
        except Exception as e:
            session.rollback()
            logger.error("scheduled_call_error", scheduled_call_id=str(call_id), error=str(e))
            outcome = "errors"
        summary[outcome] += 1

    return summary


def _fail_call(session: Session, call_id: UUID, now: datetime, error: str) -> None:
    session.execute(
        update(ScheduledCall)
        .where(ScheduledCall.id == call_id)
        .values(status="failed", last_error=error[:1000], last_attempt_at=now)
        .execution_options(synchronize_session=False)
    )


def _configuration_problem(candidate: Candidate | None, role: Role | None) -> str | None:
    if candidate is None or role is None:
        return "Candidate or role not found"
    if not role.voice_agent_id:
        return "Role has no voice agent configured"
    if not candidate.phone:
        return "Candidate has no phone number"
    return None


def process_scheduled_call(session: Session, provider, call_id: UUID, now: datetime) -> str:
    settings = get_settings()
    lease_until = now + timedelta(seconds=settings.SCHEDULED_CALL_LEASE_SECONDS)

    call = session.get(ScheduledCall, call_id)
    if call is None or call.status != "pending":
        return "skipped"
    previous_retry_at = call.next_retry_at

    leased = (
        session.execute(
            update(ScheduledCall)
            .where(
                ScheduledCall.id == call_id,
                ScheduledCall.status == "pending",
                _due_clause(now),
            )
            .values(next_retry_at=lease_until)
            .execution_options(synchronize_session=False)
        ).rowcount
        == 1
    )
    session.commit()
    if not leased:
        logger.info("scheduled_call_already_leased", scheduled_call_id=str(call_id))
        return "skipped"

    call = session.get(ScheduledCall, call_id)
    screening = session.get(Screening, call.screening_id)
    log = logger.bind(scheduled_call_id=str(call_id), screening_id=str(call.screening_id))

    if call.retry_count >= settings.SCHEDULED_CALL_MAX_RETRIES:
        log.warning("scheduled_call_retries_exhausted", retry_count=call.retry_count)
        _fail_call(session, call_id, now, call.last_error or "Maximum retries exceeded")
        if screening is not None:
            fail_screening(
                session,
                screening.id,
                screening.bulk_operation_id,
                source="scheduled_calls",
                summary=f"Call failed after {call.retry_count} attempts",
                expected_statuses=DISPATCHABLE_STATUSES,
            )
        else:
            session.commit()
        return "failed"

    if screening is None or screening.status not in DISPATCHABLE_STATUSES:
        status = screening.status if screening else None
        log.info("scheduled_call_screening_not_dispatchable", status=status)
        _fail_call(session, call_id, now, f"Screening is {status or 'missing'}")
        session.commit()
        return "failed"

    bulk_operation_id = screening.bulk_operation_id
    if bulk_operation_id is not None:
        op_status = session.scalar(
            select(BulkOperation.status).where(BulkOperation.id == bulk_operation_id)
        )
        if op_status == "paused":
            session.execute(
                update(ScheduledCall)
                .where(ScheduledCall.id == call_id)
                .values(next_retry_at=previous_retry_at)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            log.info("scheduled_call_operation_paused", bulk_operation_id=str(bulk_operation_id))
            return "skipped"

    candidate = session.get(Candidate, screening.candidate_id)
    role = session.get(Role, screening.role_id)
    problem = _configuration_problem(candidate, role)
    if problem:
        log.error("scheduled_call_misconfigured", reason=problem)
        _fail_call(session, call_id, now, problem)
        fail_screening(
            session,
            screening.id,
            bulk_operation_id,
            source="scheduled_calls",
            summary=problem,
            expected_statuses=DISPATCHABLE_STATUSES,
        )
        return "failed"

    if not is_within_call_window(role.call_window, now):
        window_opens = next_window_start(role.call_window, now)
        session.execute(
            update(ScheduledCall)
            .where(ScheduledCall.id == call_id)
            .values(next_retry_at=window_opens)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        log.info("scheduled_call_deferred", until=window_opens.isoformat())
        return "deferred"

    agent_id = role.voice_agent_id
    phone = candidate.phone
    metadata = {
        "screening_id": str(screening.id),
        "candidate_id": str(candidate.id),
        "role_id": str(role.id),
        "candidate_name": candidate.name,
    }
    first_message = build_first_message(candidate, role)
    screening_id = screening.id
    retry_count = call.retry_count

    try:
        session_id = provider.initiate_call(
            agent_id, phone, metadata=metadata, first_message=first_message
        )
    except CallProviderError as e:
        return _handle_call_failure(
            session, call_id, screening_id, bulk_operation_id, retry_count, now, e
        )

    session.execute(
        update(ScheduledCall)
        .where(ScheduledCall.id == call_id)
        .values(status="completed", last_attempt_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    started = (
        session.execute(
            update(Screening)
            .where(Screening.id == screening_id, Screening.status.in_(DISPATCHABLE_STATUSES))
            .values(
                status="in_progress",
                session_id=session_id,
                started_at=now,
                attempts=Screening.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        == 1
    )
    if started:
        record_event(
            session, screening_id, "call_initiated", {"session_id": session_id, "source": "scheduled"}
        )
    else:
        # Cancelled while the call was being placed; the call itself cannot be recalled.
        log.warning("scheduled_call_screening_changed", session_id=session_id)
    if bulk_operation_id is not None:
        session.execute(
            update(BulkOperation)
            .where(BulkOperation.id == bulk_operation_id, BulkOperation.status == "pending")
            .values(status="in_progress", started_at=now)
            .execution_options(synchronize_session=False)
        )
    session.commit()
    log.info("scheduled_call_initiated", session_id=session_id)
    return "initiated"


def _handle_call_failure(
    session: Session,
    call_id: UUID,
    screening_id: UUID,
    bulk_operation_id: UUID | None,
    retry_count: int,
    now: datetime,
    error: CallProviderError,
) -> str:
    log = logger.bind(scheduled_call_id=str(call_id), screening_id=str(screening_id))
    session.execute(
        update(Screening)
        .where(Screening.id == screening_id)
        .values(attempts=Screening.attempts + 1)
        .execution_options(synchronize_session=False)
    )

    if not error.transient:
        log.error("scheduled_call_permanent_failure", status_code=error.status_code, error=str(error))
        _fail_call(session, call_id, now, str(error))
        fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="scheduled_calls",
            summary=f"Call could not be initiated: {error}",
            expected_statuses=DISPATCHABLE_STATUSES,
        )
        return "failed"

    new_retry_count = retry_count + 1
    next_retry_at = now + retry_delay(new_retry_count)
    session.execute(
        update(ScheduledCall)
        .where(ScheduledCall.id == call_id)
        .values(
            retry_count=new_retry_count,
            next_retry_at=next_retry_at,
            last_attempt_at=now,
            last_error=str(error)[:1000],
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    log.warning(
        "scheduled_call_retry",
        retry_count=new_retry_count,
        next_retry_at=next_retry_at.isoformat(),
        error=str(error),
    )
    return "retrying"
