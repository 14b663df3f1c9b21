"""Stripe webhook endpoint: verifies the signature and hands off to the Reconciler."""

import json

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from marketpay.api.deps import get_reconciler
from marketpay.core.config import get_settings
from marketpay.services.reconciler import Reconciler

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, reconciler: Reconciler = Depends(get_reconciler)):
    """Handle Stripe webhook events with signature verification.

    2xx tells Stripe the event is done (applied, duplicate, ignored or
    dead-lettered). Any other status makes Stripe redeliver it later.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(body, sig_header, settings.stripe_webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        raw_event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info("stripe_webhook_received", event_id=raw_event.get("id"), event_type=raw_event.get("type"))
    outcome = await reconciler.process(raw_event)

    return {"status": "ok", "outcome": outcome.status.value}
