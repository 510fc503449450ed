"""
Security Module
===============

Webhook authentication.

Stripe signs every webhook with the endpoint's signing secret. The
``Stripe-Signature`` header carries a timestamp and one or more ``v1``
HMAC-SHA256 signatures over ``"{timestamp}.{body}"``. Verification is
delegated to the Stripe SDK, which compares signatures in constant time and
rejects timestamps outside the tolerance window.

This check is the only authentication the webhook endpoint has: nothing
downstream of it may run for a request that fails it.
"""

import logging
from typing import Optional

import stripe

from app.core.errors import WebhookSignatureError

logger = logging.getLogger(__name__)


def verify_webhook_signature(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> None:
    """
    Verify a Stripe webhook signature.

    Args:
        payload: Raw request body, exactly as received.
        signature: Value of the ``Stripe-Signature`` header.
        secret: Endpoint signing secret (``whsec_...``).
        tolerance: Maximum accepted age of the signed timestamp, in seconds.

    Raises:
        WebhookSignatureError: If the secret is unset, the header is missing,
            or the signature does not match.
    """
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting webhook")
        raise WebhookSignatureError("Webhook secret not configured")

    if not signature:
        logger.warning("Stripe webhook without signature header")
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Stripe webhook body is not valid UTF-8")
        raise WebhookSignatureError()

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe signature verification failed: %s", e)
        raise WebhookSignatureError()
