"""Webhook Routes - Stripe webhooks and internal user lifecycle events.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (via stripe_events collection)
- Full audit logging

POST /api/v1/payments/webhook - Stripe webhook endpoint (public)
POST /api/v1/payments/internal/user-events - users-events delivery (x-internal-api-key)
"""
from fastapi import APIRouter, Depends, Header, Request
import logging

from dependencies import BillingServices, get_services, require_internal_key
from services.errors import WebhookVerificationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["webhooks"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    services: BillingServices = Depends(get_services),
):
    """
    Handle Stripe webhooks.

    Answers 400 only when the payload cannot be verified or parsed; handler
    failures are logged on the ledger and acknowledged so Stripe does not retry.
    """
    payload = await request.body()

    success, message, details = await services.reconciler.process_webhook(
        payload=payload,
        signature=stripe_signature or "",
    )
    if not success:
        raise WebhookVerificationError(message)
    return {"received": True, "message": message, "details": details}


@router.post("/internal/user-events", dependencies=[Depends(require_internal_key)])
async def user_event(
    request: Request,
    services: BillingServices = Depends(get_services),
):
    """Deliver one users-events message; unprocessable messages are dead-lettered, never rejected."""
    payload = await request.body()
    return await services.user_events.handle_message(payload)
