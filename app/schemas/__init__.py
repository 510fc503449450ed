"""
Pydantic Schemas
================

Request/response schemas and Stripe payload models.
"""

from app.schemas.billing import BillingEventKind, StripeEvent
from app.schemas.subscription import SubscriptionStatusResponse

__all__ = [
    "BillingEventKind",
    "StripeEvent",
    "SubscriptionStatusResponse",
]
