"""
Subscription API Endpoints
==========================

Read access to the subscription state the Stripe reconciler maintains.
Callers are authorized by the platform gateway in front of this service.
"""

import logging

from fastapi import APIRouter

from app.core.errors import ErrorCodes, NotFoundError
from app.core.plans import get_plan
from app.dependencies import UserStoreDep
from app.schemas.subscription import (
    PlanLimits,
    SubscriptionState,
    SubscriptionStatusResponse,
)
from app.services.cache import CacheKeys, CacheManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{user_id}",
    response_model=SubscriptionStatusResponse,
)
async def get_subscription_status(
    user_id: str,
    store: UserStoreDep,
):
    """
    Get a user's current subscription tier, status and plan limits.

    Served from Redis when cached; the webhook invalidates the entry
    whenever the reconciler changes the user's state.
    """
    cache_key = CacheKeys.subscription_status(user_id)
    cached = await CacheManager.get(cache_key)
    if cached is not None:
        return SubscriptionStatusResponse(data=SubscriptionState.model_validate(cached))

    state = await store.get_state(user_id)
    if state is None:
        raise NotFoundError(
            code=ErrorCodes.USER_NOT_FOUND,
            message="User not found",
        )

    plan = get_plan(state.tier)
    data = SubscriptionState(
        user_id=state.user_id,
        tier=state.tier.value,
        status=state.status,
        role=state.role.value,
        stripe_customer_id=state.stripe_customer_id,
        stripe_subscription_id=state.stripe_subscription_id,
        current_period_end=state.current_period_end,
        plan_name=plan["name"],
        limits=PlanLimits(**plan["limits"]),
    )

    await CacheManager.set(cache_key, data.model_dump(mode="json"), ttl=CacheManager.TTL_HOUR)
    return SubscriptionStatusResponse(data=data)
