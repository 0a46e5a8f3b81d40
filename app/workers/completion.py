import structlog
from celery import shared_task
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.screening import Screening
from app.models.webhook_dead_letter import WebhookDeadLetter
from app.schemas.webhook import ProviderWebhook
from app.services.evaluation import build_screening_result
from app.services.finalization import fail_screening, finalize_completed

logger = structlog.get_logger()

COMPLETION_EVENTS = ("conversation_end", "call_ended", "post_call_transcription")
FAILURE_EVENTS = ("call_failed", "conversation_error", "call_initiation_failure")


@shared_task(name="screenings.ingest_webhook", bind=True, max_retries=3)
def ingest_provider_webhook(self, payload: dict):
    from app.core.database import get_sync_session

    session = get_sync_session()
    try:
        return ingest_webhook_event(session, payload)
    except Exception as e:
        session.rollback()
        logger.error("webhook_ingest_error", error=str(e))
        raise self.retry(exc=e, countdown=30)
    finally:
        session.close()


def _dead_letter(
    session: Session,
    payload: dict,
    event_type: str | None,
    session_id: str | None,
    reason: str,
) -> str:
    session.add(
        WebhookDeadLetter(
            event_type=event_type,
            session_id=session_id,
            reason=reason,
            payload=payload,
        )
    )
    session.commit()
    logger.warning(
        "webhook_dead_lettered",
        event_type=event_type,
        session_id=session_id,
        reason=reason,
    )
    return "dead_lettered"


def _match_screening(session: Session, webhook: ProviderWebhook) -> Screening | None:
    if webhook.conversation_id:
        screening = session.scalar(
            select(Screening).where(Screening.session_id == webhook.conversation_id)
        )
        if screening is not None:
            return screening
    if webhook.screening_id:
        return session.get(Screening, webhook.screening_id)
    return None


def _failure_summary(webhook: ProviderWebhook) -> str:
    error = webhook.error
    if isinstance(error, dict):
        error = error.get("message") or error.get("reason")
    if error:
        return f"Call failed: {error}"
    return f"Call failed ({webhook.type})"


def ingest_webhook_event(session: Session, payload: dict) -> str:
    """Apply one provider notification to its screening.

    Returns ``ignored``, ``dead_lettered``, ``duplicate``, ``completed`` or
    ``failed``.
    """
    try:
        webhook = ProviderWebhook.model_validate(payload)
    except ValidationError as e:
        return _dead_letter(session, payload, None, None, f"Invalid payload: {e.error_count()} errors")

    log = logger.bind(event_type=webhook.type, session_id=webhook.conversation_id)
    if webhook.type not in COMPLETION_EVENTS + FAILURE_EVENTS:
        log.info("webhook_ignored")
        return "ignored"

    screening = _match_screening(session, webhook)
    if screening is None:
        return _dead_letter(
            session, payload, webhook.type, webhook.conversation_id, "No matching screening"
        )

    log = log.bind(screening_id=str(screening.id))
    if (
        screening.session_id
        and webhook.conversation_id
        and screening.session_id != webhook.conversation_id
    ):
        # Trailing event from an earlier call; the screening has been redialed.
        return _dead_letter(
            session, payload, webhook.type, webhook.conversation_id, "Stale session"
        )

    if screening.status != "in_progress":
        log.info("webhook_duplicate", status=screening.status)
        return "duplicate"

    screening_id = screening.id
    bulk_operation_id = screening.bulk_operation_id
    # Matched by metadata before the dispatcher stored the session.
    new_session_id = None if screening.session_id else webhook.conversation_id

    if webhook.type in FAILURE_EVENTS:
        applied = fail_screening(
            session,
            screening_id,
            bulk_operation_id,
            source="webhook",
            summary=_failure_summary(webhook),
            session_id=new_session_id,
        )
        return "failed" if applied else "duplicate"

    result = build_screening_result(
        webhook.conversation(), pass_threshold=get_settings().PASS_SCORE_THRESHOLD
    )
    applied = finalize_completed(
        session,
        screening_id,
        bulk_operation_id,
        result,
        source="webhook",
        session_id=new_session_id,
    )
    return "completed" if applied else "duplicate"
