"""Recovery of screenings whose completion webhook never arrived.

Polls the provider for every screening that has been in progress longer
than the threshold and finalizes it exactly as the webhook would have.
"""

from datetime import datetime, timedelta, timezone

import structlog
from celery import shared_task
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.screening import Screening
from app.services.call_provider import (
    ACTIVE_CONVERSATION_STATUSES,
    CallProviderError,
    ConversationNotFound,
    ProviderRateLimited,
)
from app.services.evaluation import build_screening_result
from app.services.finalization import fail_screening, finalize_completed

logger = structlog.get_logger()

MISSING_CONVERSATION_SUMMARY = (
    "Conversation data not found at the provider. The call may not have connected "
    "or the conversation expired before it could be collected."
)
ORPHANED_CLAIM_SUMMARY = "Call was never confirmed by the provider"


@shared_task(name="reconciliation.stuck_screenings")
def reconcile_stuck_screenings():
    from app.core.database import get_sync_session
    from app.services.call_provider import get_call_provider

    try:
        provider = get_call_provider()
    except CallProviderError as e:
        logger.error("reconciliation_skip", reason=str(e))
        return {"status": "skipped", "reason": str(e)}

    session = get_sync_session()
    try:
        with provider:
            summary = run_reconciliation_sweep(session, provider)
    except Exception as e:
        session.rollback()
        logger.error("reconciliation_error", error=str(e))
        raise
    finally:
        session.close()

    logger.info("reconciliation_done", **summary)
    return summary


def run_reconciliation_sweep(session: Session, provider, now: datetime | None = None) -> dict:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    stuck_before = now - timedelta(seconds=settings.STUCK_SCREENING_THRESHOLD_SECONDS)
    summary = {
        "total": 0,
        "updated": 0,
        "failed": 0,
        "still_active": 0,
        "rate_limited": 0,
        "already_final": 0,
        "errors": 0,
        "orphaned": 0,
    }

    stuck = (
        session.execute(
            select(Screening.id, Screening.session_id, Screening.bulk_operation_id)
            .where(
                Screening.status == "in_progress",
                Screening.session_id.is_not(None),
                Screening.started_at < stuck_before,
            )
            .order_by(Screening.started_at)
            .limit(settings.STUCK_SCREENING_PAGE_SIZE)
        )
        .all()
    )
    summary["total"] = len(stuck)
    logger.info("reconciliation_sweep", stuck=len(stuck))

    for screening_id, session_id, bulk_operation_id in stuck:
        try:
            outcome = reconcile_screening(
                session, provider, screening_id, session_id, bulk_operation_id
            )
        except Exception as e:
            session.rollback()
            logger.error("reconciliation_screening_error", screening_id=str(screening_id), error=str(e))
            outcome = "errors"
        summary[outcome] += 1
        if outcome == "rate_limited":
            logger.warning("reconciliation_rate_limited", screening_id=str(screening_id))
            break

    summary["orphaned"] = fail_orphaned_claims(session, stuck_before)
    return summary


def reconcile_screening(session: Session, provider, screening_id, session_id, bulk_operation_id) -> str:
    log = logger.bind(screening_id=str(screening_id), session_id=session_id)
    try:
        conversation = provider.get_conversation(session_id)
    except ConversationNotFound:
        log.warning("reconciliation_conversation_missing")
        applied = fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="reconciler",
            summary=MISSING_CONVERSATION_SUMMARY,
        )
        return "failed" if applied else "already_final"
    except ProviderRateLimited:
        return "rate_limited"
    except CallProviderError as e:
        log.error("reconciliation_fetch_error", status_code=e.status_code, error=str(e))
        return "errors"

    status = str(conversation.get("status") or "").lower()
    if status in ACTIVE_CONVERSATION_STATUSES:
        log.info("reconciliation_still_active", status=status)
        return "still_active"

    if status == "failed":
        applied = fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="reconciler",
            summary="Conversation failed at the provider",
        )
        return "failed" if applied else "already_final"

    result = build_screening_result(
        conversation, pass_threshold=get_settings().PASS_SCORE_THRESHOLD
    )
    applied = finalize_completed(
        session, screening_id, bulk_operation_id, result, source="reconciler"
    )
    return "updated" if applied else "already_final"


def fail_orphaned_claims(session: Session, stuck_before: datetime) -> int:
    """Fail claims whose dispatcher died before the provider answered."""
    orphans = session.execute(
        select(Screening.id, Screening.bulk_operation_id)
        .where(
            Screening.status == "in_progress",
            Screening.session_id.is_(None),
            Screening.started_at < stuck_before,
        )
        .limit(get_settings().STUCK_SCREENING_PAGE_SIZE)
    ).all()

    failed = 0
    for screening_id, bulk_operation_id in orphans:
        logger.warning("reconciliation_orphaned_claim", screening_id=str(screening_id))
        if fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="reconciler",
            summary=ORPHANED_CLAIM_SUMMARY,
            require_no_session=True,
        ):
            failed += 1
    return failed
