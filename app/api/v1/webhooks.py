import json

import structlog
from fastapi import APIRouter, HTTPException, Request

from app.core.config import get_settings
from app.core.rate_limit import limiter
from app.services.webhook_signature import SIGNATURE_HEADER, InvalidSignature, verify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/elevenlabs")
@limiter.limit("300/minute")
async def elevenlabs_webhook(request: Request):
    """Conversation lifecycle notifications from ElevenLabs.

    The payload is queued for the ingestion worker and acknowledged at once;
    events that match no screening are dead-lettered there, never rejected.
    """
    body = await request.body()

    secret = get_settings().ELEVENLABS_WEBHOOK_SECRET
    if secret:
        try:
            verify_signature(secret, request.headers.get(SIGNATURE_HEADER), body)
        except InvalidSignature as e:
            logger.warning("webhook_signature_rejected", reason=str(e))
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    from app.workers.completion import ingest_provider_webhook

    ingest_provider_webhook.delay(payload)
    logger.info("webhook_received", event_type=payload.get("type"))
    return {"received": True}
