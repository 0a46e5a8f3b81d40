import json
import time
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest
from sqlalchemy import select

from app.core.config import get_settings
from app.models.scheduled_call import ScheduledCall
from app.services.webhook_signature import (
    InvalidSignature,
    compute_signature,
    verify_signature,
)

PAYLOAD = {"type": "call_ended", "conversation_id": "conv_1", "transcript": []}


def _signed_headers(secret, body, timestamp=None):
    timestamp = str(timestamp or int(time.time()))
    return {
        "ElevenLabs-Signature": f"t={timestamp},v0={compute_signature(secret, timestamp, body)}",
        "Content-Type": "application/json",
    }


def test_signature_roundtrip_and_tolerance():
    body = b'{"type": "call_ended"}'
    header = f"t=1000,v0={compute_signature('whsec_test', '1000', body)}"

    verify_signature("whsec_test", header, body, now=1100)
    with pytest.raises(InvalidSignature):
        verify_signature("whsec_other", header, body, now=1100)
    with pytest.raises(InvalidSignature):
        verify_signature("whsec_test", header, body, now=1000 + 3600)
    with pytest.raises(InvalidSignature):
        verify_signature("whsec_test", "v0=abc", body, now=1000)
    with pytest.raises(InvalidSignature):
        verify_signature("whsec_test", None, body, now=1000)


@pytest.mark.asyncio
async def test_webhook_is_queued(client, enqueued):
    res = await client.post("/api/v1/webhooks/elevenlabs", json=PAYLOAD)

    assert res.status_code == 200
    assert res.json() == {"received": True}
    enqueued["ingest"].delay.assert_called_once_with(PAYLOAD)


@pytest.mark.asyncio
async def test_webhook_rejects_bad_json(client, enqueued):
    res = await client.post(
        "/api/v1/webhooks/elevenlabs",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 400
    enqueued["ingest"].delay.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_signature_enforced_when_secret_set(client, enqueued, monkeypatch):
    monkeypatch.setattr(get_settings(), "ELEVENLABS_WEBHOOK_SECRET", "whsec_test")
    body = json.dumps(PAYLOAD).encode()

    res = await client.post("/api/v1/webhooks/elevenlabs", content=body)
    assert res.status_code == 401

    res = await client.post(
        "/api/v1/webhooks/elevenlabs",
        content=body,
        headers=_signed_headers("whsec_wrong", body),
    )
    assert res.status_code == 401
    enqueued["ingest"].delay.assert_not_called()

    res = await client.post(
        "/api/v1/webhooks/elevenlabs",
        content=body,
        headers=_signed_headers("whsec_test", body),
    )
    assert res.status_code == 200
    enqueued["ingest"].delay.assert_called_once_with(PAYLOAD)


@pytest.mark.asyncio
async def test_triggers_queue_tasks(client, enqueued):
    res = await client.post("/api/v1/triggers/scheduled-calls")
    assert res.status_code == 202
    assert res.json()["task_id"] == "scheduled-task"

    res = await client.post("/api/v1/triggers/stuck-screenings")
    assert res.status_code == 202
    assert res.json()["task_id"] == "reconcile-task"

    res = await client.post("/api/v1/triggers/bulk-supervisor")
    assert res.status_code == 202
    assert res.json()["task_id"] == "supervise-task"


@pytest.mark.asyncio
async def test_triggers_require_internal_token(client, enqueued, monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_API_TOKEN", "cron-secret")

    res = await client.post("/api/v1/triggers/scheduled-calls")
    assert res.status_code == 401

    res = await client.post(
        "/api/v1/triggers/scheduled-calls", headers={"X-Internal-Token": "cron-secret"}
    )
    assert res.status_code == 202
    enqueued["scheduled"].delay.assert_called_once_with()


@pytest.mark.asyncio
async def test_create_single_screening_due_now(client, db, enqueued, make_role, make_candidate):
    role = make_role()
    candidate = make_candidate()

    res = await client.post(
        "/api/v1/screenings",
        json={"role_id": str(role.id), "candidate_id": str(candidate.id)},
    )

    assert res.status_code == 201
    data = res.json()
    assert data["status"] == "scheduled"
    assert data["bulk_operation_id"] is None
    enqueued["scheduled"].delay.assert_called_once_with()

    call = db.scalar(select(ScheduledCall).where(ScheduledCall.screening_id == UUID(data["id"])))
    assert call.status == "pending"

    res = await client.get(f"/api/v1/screenings/{data['id']}")
    assert res.status_code == 200
    assert res.json()["attempts"] == 0

    res = await client.get(f"/api/v1/screenings/{data['id']}/events")
    assert [e["event_type"] for e in res.json()] == ["scheduled"]


@pytest.mark.asyncio
async def test_create_single_screening_in_future(client, enqueued, make_role, make_candidate):
    role = make_role()
    candidate = make_candidate()
    when = (datetime.now(timezone.utc) + timedelta(hours=3)).isoformat()

    res = await client.post(
        "/api/v1/screenings",
        json={"role_id": str(role.id), "candidate_id": str(candidate.id), "scheduled_at": when},
    )

    assert res.status_code == 201
    enqueued["scheduled"].delay.assert_not_called()


@pytest.mark.asyncio
async def test_create_single_screening_validation(client, enqueued, make_role, make_candidate):
    role = make_role()
    no_phone = make_candidate(phone=None)

    res = await client.post(
        "/api/v1/screenings",
        json={"role_id": str(role.id), "candidate_id": str(no_phone.id)},
    )
    assert res.status_code == 400

    res = await client.get("/api/v1/screenings/5f2d0c3e-9b1a-4c55-8f0e-3b7a1d2c4e6f")
    assert res.status_code == 404
