"""
Stripe Webhook Endpoints

Receives Stripe payment events and hands them to the WebhookReconciler.

Key Features:
- Webhook signature verification before the payload is read
- Idempotent event processing through the webhook ledger
- 2xx for every event that was evaluated (processed, duplicate, ignored,
  rejected) so Stripe stops redelivering it; 500 only for transient failures
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..api.dependencies import get_webhook_reconciler
from ..core.exceptions import DomainException
from ..schemas.payment import WebhookResponse
from ..services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["stripe-webhooks"])


@router.post("/payment-events", response_model=WebhookResponse)
async def handle_payment_events(
    request: Request, reconciler: WebhookReconciler = Depends(get_webhook_reconciler)
) -> WebhookResponse:
    """
    Handle Stripe payment-related webhook events.

    Processes events like:
    - payment_intent.succeeded
    - payment_intent.payment_failed
    - payment_intent.canceled
    - payment_intent.amount_capturable_updated
    - checkout.session.completed / checkout.session.expired

    Raises:
        HTTPException: 500 when the event could not be stored, so Stripe retries
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        outcome = await asyncio.to_thread(reconciler.apply_event, payload, signature)
    except DomainException as e:
        logger.error(f"Error processing Stripe webhook: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook"
        )
    except Exception as e:
        logger.error(f"Error processing Stripe webhook: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook"
        )

    logger.info(
        f"Stripe webhook {outcome.event_type} -> {outcome.status}",
        extra={"event_id": outcome.event_id, "booking_id": outcome.booking_id},
    )
    return WebhookResponse(
        status=outcome.status, event_type=outcome.event_type, message=outcome.message
    )
