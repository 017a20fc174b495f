"""
Delivery webhook receiver for the mail provider.

The signature is an HMAC-SHA256 over "{timestamp}.{raw body}" with the
shared webhook secret. Events are matched to email history by the
provider message id returned at send time.
"""

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request

from app.config import settings
from app.features.drip_campaign.runtime import DripRuntime
from app.infrastructure.observability.logging import get_logger

from .dependencies import get_runtime

router = APIRouter(prefix="/api/webhooks", tags=["drip-webhooks"])
logger = get_logger(__name__)

SIGNATURE_HEADER = "resend-signature"
TIMESTAMP_HEADER = "resend-timestamp"


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, timestamp: str | None) -> None:
    secret = settings.RESEND_WEBHOOK_SECRET
    if not secret:
        logger.error("Webhook secret not configured, rejecting delivery event")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    if not signature or not timestamp:
        raise HTTPException(status_code=401, detail="Missing signature")

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")


@router.post("/resend")
async def resend_webhook(request: Request, runtime: DripRuntime = Depends(get_runtime)):
    raw = await request.body()
    verify_signature(
        raw, request.headers.get(SIGNATURE_HEADER), request.headers.get(TIMESTAMP_HEADER)
    )

    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = event.get("type")
    message_id = (event.get("data") or {}).get("email_id")
    if not event_type or not message_id:
        raise HTTPException(status_code=400, detail="Missing event type or email_id")

    emails = runtime.emails
    handlers = {
        "email.sent": emails.mark_delivered,
        "email.delivered": emails.mark_delivered,
        "email.opened": emails.record_open,
        "email.clicked": emails.record_click,
        "email.bounced": emails.mark_bounced,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled webhook event", event_type=event_type)
        return {"received": True, "handled": False}

    updated = await handler(message_id)
    logger.info(
        "Delivery event processed",
        event_type=event_type,
        provider_message_id=message_id,
        records_updated=updated,
    )
    return {"received": True, "handled": True}
