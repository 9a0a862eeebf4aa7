"""Payment gateway webhook receiver.

Implements:
- POST /webhooks/stripe - Verify, parse and reconcile one gateway event
"""

from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from billing_engine.logging_config import get_logger
from billing_engine.models.billing import ReconciliationResult
from billing_engine.models.events import WebhookEvent
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.reconciliation import ReconciliationProcessor, get_reconciliation_processor

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"], prefix="/webhooks")


def _bad_request(error: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": error, "message": message})


@router.post("/stripe", response_model=ReconciliationResult, summary="Receive gateway event")
async def receive_stripe_event(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    processor: ReconciliationProcessor = Depends(get_reconciliation_processor),
) -> ReconciliationResult:
    """Verify the event signature and fold the event into local state.

    Ignored events (unknown kinds, untracked subscriptions, stale deliveries)
    are still acknowledged with 200 so the gateway stops retrying them.

    Raises:
        400: Missing or invalid signature, or a malformed envelope
    """
    if not stripe_signature:
        logger.warning("webhook_signature_missing")
        raise _bad_request("missing_signature", "Stripe-Signature header is required")

    payload = await request.body()
    try:
        envelope = gateway.construct_event(payload, stripe_signature)
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_invalid", error=str(e))
        raise _bad_request("invalid_signature", "Webhook signature verification failed")
    except ValueError as e:
        logger.warning("webhook_payload_invalid", error=str(e))
        raise _bad_request("invalid_payload", str(e))

    try:
        event = WebhookEvent.model_validate(envelope)
    except ValidationError as e:
        logger.warning("webhook_envelope_invalid", error=str(e))
        raise _bad_request("invalid_event", "Event envelope is missing required fields")

    logger.info("webhook_received", event_id=event.id, event_type=event.type)
    # apply_event may block on a notification publish ack
    return await run_in_threadpool(processor.apply_event, event)
