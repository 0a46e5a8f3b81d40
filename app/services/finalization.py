"""Guarded terminal transitions for screenings.

Webhook ingestion and reconciliation polling race for the same session, so
every transition only applies while the screening is still in the expected
state. A second finalization matches zero rows and is a no-op.
"""

from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.screening import Screening
from app.services.bulk_counters import bump_counter, complete_if_drained
from app.services.evaluation import ScreeningResult
from app.services.screening_events import record_event

logger = structlog.get_logger()


def finalize_completed(
    session: Session,
    screening_id: UUID,
    bulk_operation_id: UUID | None,
    result: ScreeningResult,
    source: str,
    session_id: str | None = None,
) -> bool:
    now = datetime.now(timezone.utc)
    conditions = [Screening.id == screening_id, Screening.status == "in_progress"]
    values = {"status": "completed", "completed_at": now, **result.as_update()}
    if session_id:
        # Only adopt a session when none is stored, never replace one.
        conditions.append(Screening.session_id.is_(None))
        values["session_id"] = session_id

    applied = (
        session.execute(
            update(Screening)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        == 1
    )
    if applied:
        record_event(
            session,
            screening_id,
            "completed",
            {"source": source, "score": result.score, "outcome": result.outcome},
        )
    session.commit()

    if not applied:
        logger.info("screening_finalize_noop", screening_id=str(screening_id), source=source)
        return False

    logger.info(
        "screening_completed",
        screening_id=str(screening_id),
        source=source,
        score=result.score,
        outcome=result.outcome,
    )
    bump_counter(session, bulk_operation_id, "completed_count")
    complete_if_drained(session, bulk_operation_id)
    return True


def fail_screening(
    session: Session,
    screening_id: UUID,
    bulk_operation_id: UUID | None,
    source: str,
    summary: str | None = None,
    expected_statuses: tuple[str, ...] = ("in_progress",),
    require_no_session: bool = False,
    session_id: str | None = None,
) -> bool:
    """Move a screening to ``failed`` and count it against its bulk operation.

    Anything else staged on ``session`` is committed along with it.
    """
    now = datetime.now(timezone.utc)
    conditions = [Screening.id == screening_id, Screening.status.in_(expected_statuses)]
    if require_no_session:
        conditions.append(Screening.session_id.is_(None))

    values = {"status": "failed", "completed_at": now}
    if summary:
        values["ai_summary"] = summary
    if session_id:
        conditions.append(Screening.session_id.is_(None))
        values["session_id"] = session_id

    applied = (
        session.execute(
            update(Screening)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        == 1
    )
    if applied:
        record_event(session, screening_id, "failed", {"source": source, "summary": summary})
    session.commit()

    if not applied:
        logger.info("screening_fail_noop", screening_id=str(screening_id), source=source)
        return False

    logger.info("screening_failed", screening_id=str(screening_id), source=source, summary=summary)
    bump_counter(session, bulk_operation_id, "failed_count")
    complete_if_drained(session, bulk_operation_id)
    return True
