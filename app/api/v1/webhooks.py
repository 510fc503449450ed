"""
Webhooks API Endpoints
======================

Handles webhooks from Stripe.

Authentication:
    Stripe signs each delivery; the ``Stripe-Signature`` header is verified
    against STRIPE_WEBHOOK_SECRET before the body is even parsed. A failed
    check answers 400 and nothing else runs.

Acknowledgement:
    Every verified event gets a 200, including ones we can't link to a user
    or don't handle, so Stripe stops redelivering them. Only faults that a
    retry could fix (Stripe API or database failures) answer 500.

Idempotency:
    Handlers overwrite state with a full snapshot, so redelivery is safe.
    Processed event IDs are also remembered in Redis (with TTL) to skip
    obvious duplicates cheaply.
"""

import json
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError

from app.core.errors import (
    BillingError,
    ErrorCodes,
    InternalError,
    WebhookPayloadError,
)
from app.core.security import verify_webhook_signature
from app.dependencies import AppSettings, DBSession, Reconciler
from app.schemas.billing import StripeEvent
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager

logger = logging.getLogger(__name__)

router = APIRouter()


async def _is_event_processed(event_id: str) -> bool:
    """Check if a webhook event has already been processed."""
    return await CacheManager.exists(CacheKeys.stripe_event(event_id))


async def _mark_event_processed(event_id: str) -> None:
    """Mark a webhook event as processed in Redis."""
    await CacheManager.set(
        CacheKeys.stripe_event(event_id), 1, ttl=CacheManager.TTL_WEEK
    )


async def verified_stripe_event(
    request: Request,
    settings: AppSettings,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
) -> StripeEvent:
    """
    Verify the webhook signature, then parse the event envelope.

    Raises:
        WebhookSignatureError: 400, signature check failed.
        WebhookPayloadError: 400, signed body is not a Stripe event.
    """
    payload = await request.body()

    verify_webhook_signature(
        payload,
        stripe_signature,
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )

    try:
        event = StripeEvent.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Invalid webhook payload: %s", e)
        raise WebhookPayloadError()

    request.state.stripe_event_type = event.type
    return event


@router.post("/stripe")
async def stripe_webhook(
    event: Annotated[StripeEvent, Depends(verified_stripe_event)],
    db: DBSession,
    reconciler: Reconciler,
):
    """
    Handle Stripe webhook events.

    Events handled:
    - checkout.session.completed
    - invoice.payment_succeeded
    - invoice.payment_failed
    - customer.subscription.created
    - customer.subscription.updated
    - customer.subscription.deleted

    Any other type is acknowledged as a no-op.
    """
    logger.info("Webhook received: type=%s event_id=%s", event.type, event.id)

    # ── Idempotency check ─────────────────────────────────────────────────
    if await _is_event_processed(event.id):
        logger.info("Duplicate webhook event %s, skipping", event.id)
        return {"received": True, "duplicate": True}

    # ── Process event ─────────────────────────────────────────────────────
    try:
        outcome = await reconciler.reconcile(event)
        await db.commit()
    except BillingError as e:
        logger.exception(
            "Webhook processing failed: type=%s event_id=%s", event.type, event.id
        )
        await db.rollback()
        # 500 so Stripe will retry
        raise InternalError(code=e.code, message="Error processing webhook")
    except Exception:
        logger.exception(
            "Webhook processing error: type=%s event_id=%s", event.type, event.id
        )
        await db.rollback()
        raise InternalError(
            code=ErrorCodes.WEBHOOK_PROCESSING_FAILED,
            message="Error processing webhook",
        )

    # Mark event as processed (after successful commit)
    await _mark_event_processed(event.id)

    if outcome.changed_state and outcome.user_id:
        await CacheInvalidator.on_subscription_change(outcome.user_id)

    logger.info(
        "Webhook processed: type=%s event_id=%s result=%s user=%s",
        event.type,
        event.id,
        outcome.result.value,
        outcome.user_id,
    )

    return {"received": True}
