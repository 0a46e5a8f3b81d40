"""Aggregate counters and completion of bulk operations.

Counters are shared by the dispatcher, the webhook ingester and the
reconciler, so they are only ever changed with single UPDATE statements
(``col = col + 1``), never read-modify-write in Python.
"""

from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.bulk_operation import BulkOperation
from app.models.screening import OPEN_SCREENING_STATUSES, Screening

logger = structlog.get_logger()

COUNTER_COLUMNS = ("completed_count", "failed_count")
# A scheduled operation whose calls all fail never leaves pending.
DRAINABLE_STATUSES = ("pending", "in_progress")


def increment_counter_stmt(bulk_operation_id: UUID, column: str):
    if column not in COUNTER_COLUMNS:
        raise ValueError(f"Unknown bulk operation counter: {column}")
    counter = getattr(BulkOperation, column)
    return (
        update(BulkOperation)
        .where(
            BulkOperation.id == bulk_operation_id,
            BulkOperation.completed_count + BulkOperation.failed_count
            < BulkOperation.total_count,
        )
        .values({column: counter + 1})
        .execution_options(synchronize_session=False)
    )


def complete_if_drained_stmt(bulk_operation_id: UUID, now: datetime):
    open_children = (
        select(Screening.id)
        .where(
            Screening.bulk_operation_id == bulk_operation_id,
            Screening.status.in_(OPEN_SCREENING_STATUSES),
        )
        .exists()
    )
    return (
        update(BulkOperation)
        .where(
            BulkOperation.id == bulk_operation_id,
            BulkOperation.status.in_(DRAINABLE_STATUSES),
            ~open_children,
        )
        .values(status="completed", completed_at=now)
        .execution_options(synchronize_session=False)
    )


def recompute_counters_stmt(bulk_operation_id: UUID):
    """Rebuild both counters from the child screenings in one statement."""

    def _count(status: str):
        return (
            select(func.count(Screening.id))
            .where(
                Screening.bulk_operation_id == bulk_operation_id,
                Screening.status == status,
            )
            .scalar_subquery()
        )

    return (
        update(BulkOperation)
        .where(BulkOperation.id == bulk_operation_id)
        .values(completed_count=_count("completed"), failed_count=_count("failed"))
        .execution_options(synchronize_session=False)
    )


def bump_counter(session: Session, bulk_operation_id: UUID | None, column: str) -> bool:
    """Best-effort increment in its own transaction.

    A failure here never undoes the screening transition that triggered it;
    the screening row stays the source of truth and counters can be rebuilt.
    """
    if bulk_operation_id is None:
        return False
    try:
        applied = session.execute(increment_counter_stmt(bulk_operation_id, column)).rowcount == 1
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(
            "bulk_counter_increment_error",
            bulk_operation_id=str(bulk_operation_id),
            counter=column,
            error=str(e),
        )
        return False

    if not applied:
        logger.warning(
            "bulk_counter_increment_skipped",
            bulk_operation_id=str(bulk_operation_id),
            counter=column,
        )
    return applied


def complete_if_drained(session: Session, bulk_operation_id: UUID | None) -> bool:
    if bulk_operation_id is None:
        return False
    now = datetime.now(timezone.utc)
    completed = session.execute(complete_if_drained_stmt(bulk_operation_id, now)).rowcount == 1
    session.commit()
    if completed:
        logger.info("bulk_operation_completed", bulk_operation_id=str(bulk_operation_id))
    return completed
