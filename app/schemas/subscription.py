"""
Subscription Schemas
====================

Pydantic schemas for subscription status endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PlanLimits(BaseModel):
    """Usage limits for a subscription tier. -1 means unlimited."""

    articles_per_day: int
    ai_generations_per_month: int
    shorts_per_day: int


class SubscriptionState(BaseModel):
    """Stored subscription state of a user."""

    user_id: str
    tier: str
    status: Optional[str] = None
    role: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    plan_name: str
    limits: PlanLimits


class SubscriptionStatusResponse(BaseModel):
    """Response schema for subscription status."""

    success: bool = True
    data: SubscriptionState
