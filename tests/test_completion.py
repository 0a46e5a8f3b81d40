from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.models.bulk_operation import BulkOperation
from app.models.screening import Screening
from app.models.webhook_dead_letter import WebhookDeadLetter
from app.schemas.webhook import ProviderWebhook
from app.services.bulk_counters import bump_counter
from app.services.evaluation import build_screening_result
from app.services.finalization import finalize_completed
from app.workers.completion import ingest_webhook_event
from app.workers.reconciliation import run_reconciliation_sweep
from conftest import children, refreshed

ANALYSIS = {
    "transcript_summary": "Candidate confirmed availability and experience.",
    "call_successful": None,
    "evaluation_criteria_results": {
        "experience": {"criteria_id": "experience", "result": "success", "rationale": "4 years"},
        "location": {"criteria_id": "location", "result": "success", "rationale": "Lives nearby"},
        "shift": {"criteria_id": "shift", "result": "success", "rationale": "OK with nights"},
        "salary": {"criteria_id": "salary", "result": "failure", "rationale": "Expects more"},
    },
}
TRANSCRIPT = [
    {"role": "agent", "message": "Hello", "time_in_call_secs": 0},
    {"role": "user", "message": "Yes, speaking", "time_in_call_secs": 2.6},
    {"role": "agent", "message": "Great", "time_in_call_secs": 5},
]


@pytest.fixture()
def in_progress(db, make_bulk_operation):
    """A bulk operation whose single screening is on a live call."""

    def _make(count=1):
        operation = make_bulk_operation(count=count, status="in_progress")
        for i, screening in enumerate(children(db, operation.id), start=1):
            db.execute(
                update(Screening)
                .where(Screening.id == screening.id)
                .values(
                    status="in_progress",
                    session_id=f"conv_{i}",
                    attempts=1,
                    started_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
        db.commit()
        return operation

    return _make


def _ended(session_id, **extra):
    return {
        "type": "post_call_transcription",
        "event_timestamp": 1760860000,
        "data": {
            "conversation_id": session_id,
            "status": "done",
            "transcript": TRANSCRIPT,
            "analysis": ANALYSIS,
            "metadata": {"call_duration_secs": 95},
            **extra,
        },
    }


def test_envelope_is_unwrapped():
    webhook = ProviderWebhook.model_validate(
        _ended(
            "conv_9",
            conversation_initiation_client_data={
                "dynamic_variables": {"screening_id": "0b8f4f0e-5ad5-4b1c-9d43-2f7e0c1d8a11"}
            },
        )
    )
    assert webhook.type == "post_call_transcription"
    assert webhook.conversation_id == "conv_9"
    assert str(webhook.screening_id) == "0b8f4f0e-5ad5-4b1c-9d43-2f7e0c1d8a11"
    assert webhook.conversation()["metadata"]["call_duration_secs"] == 95


def test_conversation_end_completes_screening(db, in_progress):
    operation = in_progress()

    assert ingest_webhook_event(db, _ended("conv_1")) == "completed"

    [screening] = children(db, operation.id)
    assert screening.status == "completed"
    assert screening.score == 75
    assert screening.outcome == "pass"
    assert screening.reasons == ["Expects more"]
    assert screening.first_response_time_seconds == 3
    assert screening.duration_seconds == 95
    assert screening.completed_at is not None

    operation = refreshed(db, operation)
    assert operation.completed_count == 1
    assert operation.status == "completed"


def test_flat_call_ended_payload(db, in_progress):
    operation = in_progress()
    payload = {
        "type": "call_ended",
        "conversation_id": "conv_1",
        "transcript": TRANSCRIPT[:1],
        "analysis": {},
    }

    assert ingest_webhook_event(db, payload) == "completed"

    [screening] = children(db, operation.id)
    assert screening.outcome == "fail"
    assert "Candidate did not respond to screening questions" in screening.reasons


def test_call_failed_event(db, in_progress):
    operation = in_progress(count=2)

    payload = {"type": "call_failed", "conversation_id": "conv_2", "error": {"message": "busy"}}
    assert ingest_webhook_event(db, payload) == "failed"

    screenings = children(db, operation.id)
    assert [s.status for s in screenings] == ["in_progress", "failed"]
    assert "busy" in screenings[1].ai_summary
    operation = refreshed(db, operation)
    assert operation.failed_count == 1
    assert operation.status == "in_progress"


def test_match_by_screening_id_metadata(db, make_bulk_operation):
    operation = make_bulk_operation(count=1, status="in_progress")
    [screening] = children(db, operation.id)
    # Claimed by the dispatcher, provider has not answered yet
    db.execute(
        update(Screening)
        .where(Screening.id == screening.id)
        .values(status="in_progress", started_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()

    payload = _ended(
        "conv_early",
        conversation_initiation_metadata={"custom_data": {"screen_id": str(screening.id)}},
    )
    assert ingest_webhook_event(db, payload) == "completed"
    assert refreshed(db, screening).session_id == "conv_early"


def test_unmatched_event_is_dead_lettered(db):
    assert ingest_webhook_event(db, _ended("conv_unknown")) == "dead_lettered"

    letter = db.scalar(select(WebhookDeadLetter))
    assert letter.session_id == "conv_unknown"
    assert letter.event_type == "post_call_transcription"
    assert letter.payload["data"]["conversation_id"] == "conv_unknown"


def test_unrelated_event_is_ignored(db):
    assert ingest_webhook_event(db, {"type": "conversation_started"}) == "ignored"
    assert db.scalar(select(func.count(WebhookDeadLetter.id))) == 0


def test_duplicate_webhook_is_noop(db, in_progress):
    operation = in_progress()

    assert ingest_webhook_event(db, _ended("conv_1")) == "completed"
    assert ingest_webhook_event(db, _ended("conv_1")) == "duplicate"

    assert refreshed(db, operation).completed_count == 1


def test_webhook_and_reconciler_finalize_once(db, provider, in_progress):
    operation = in_progress()
    long_ago = datetime(2026, 1, 1, tzinfo=timezone.utc)
    db.execute(
        update(Screening)
        .where(Screening.bulk_operation_id == operation.id)
        .values(started_at=long_ago)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    provider.conversations["conv_1"] = {
        "status": "done",
        "transcript": TRANSCRIPT,
        "analysis": ANALYSIS,
        "metadata": {},
    }

    assert ingest_webhook_event(db, _ended("conv_1")) == "completed"
    summary = run_reconciliation_sweep(db, provider)

    assert summary["total"] == 0
    operation = refreshed(db, operation)
    assert operation.completed_count == 1
    assert operation.failed_count == 0


def test_reconciler_first_then_webhook(db, provider, in_progress):
    operation = in_progress()
    [screening] = children(db, operation.id)

    result = build_screening_result({"transcript": TRANSCRIPT, "analysis": ANALYSIS})
    assert finalize_completed(db, screening.id, operation.id, result, source="reconciler")

    assert ingest_webhook_event(db, _ended("conv_1")) == "duplicate"
    assert refreshed(db, operation).completed_count == 1


def test_event_from_earlier_session_is_dead_lettered(db, in_progress):
    operation = in_progress()
    [screening] = children(db, operation.id)
    # Redialed after retry-failed; the live call is conv_1
    payload = {
        "type": "call_failed",
        "conversation_id": "conv_old",
        "conversation_initiation_metadata": {"custom_data": {"screening_id": str(screening.id)}},
    }

    assert ingest_webhook_event(db, payload) == "dead_lettered"

    screening = refreshed(db, screening)
    assert screening.status == "in_progress"
    assert screening.session_id == "conv_1"
    assert refreshed(db, operation).failed_count == 0
    letter = db.scalar(select(WebhookDeadLetter))
    assert letter.reason == "Stale session"
    assert letter.session_id == "conv_old"


def test_late_results_do_not_replace_a_stored_session(db, in_progress):
    operation = in_progress()
    [screening] = children(db, operation.id)
    result = build_screening_result({"transcript": TRANSCRIPT, "analysis": ANALYSIS})

    assert not finalize_completed(
        db, screening.id, operation.id, result, source="webhook", session_id="conv_old"
    )

    screening = refreshed(db, screening)
    assert screening.status == "in_progress"
    assert screening.session_id == "conv_1"


def test_counters_never_exceed_total(db, in_progress):
    operation = in_progress()
    [screening] = children(db, operation.id)
    # Counters already account for every child
    db.execute(
        update(BulkOperation)
        .where(BulkOperation.id == operation.id)
        .values(failed_count=1)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    result = build_screening_result({"transcript": TRANSCRIPT, "analysis": ANALYSIS})
    assert finalize_completed(db, screening.id, operation.id, result, source="webhook")
    assert not bump_counter(db, operation.id, "failed_count")

    operation = refreshed(db, operation)
    assert operation.completed_count == 0
    assert operation.failed_count == 1
    assert operation.completed_count + operation.failed_count <= operation.total_count
    assert refreshed(db, screening).status == "completed"


def test_counter_failure_keeps_finalized_screening(db, in_progress, monkeypatch):
    operation = in_progress()
    [screening] = children(db, operation.id)

    def broken_increment(bulk_operation_id, column):
        raise SQLAlchemyError("counter update failed")

    monkeypatch.setattr("app.services.bulk_counters.increment_counter_stmt", broken_increment)

    assert ingest_webhook_event(db, _ended("conv_1")) == "completed"

    screening = refreshed(db, screening)
    assert screening.status == "completed"
    assert screening.score == 75
    operation = refreshed(db, operation)
    assert operation.completed_count == 0
    assert operation.status == "completed"
