"""
Subscription Plans
==================

EchoNow plan catalogue and tier hierarchy.
"""

from app.models.subscription import SubscriptionTier


# Plan definitions by subscription tier. -1 means unlimited.
SUBSCRIPTION_PLANS = {
    "free": {
        "name": "Free",
        "price": 0,
        "currency": "BRL",
        "interval": "month",
        "limits": {
            "articles_per_day": 5,
            "ai_generations_per_month": 5,
            "shorts_per_day": 3,
        },
    },
    "premium": {
        "name": "Premium",
        "price": 1900,  # cents
        "currency": "BRL",
        "interval": "month",
        "limits": {
            "articles_per_day": -1,
            "ai_generations_per_month": 50,
            "shorts_per_day": 20,
        },
    },
    "pro": {
        "name": "Pro",
        "price": 4900,  # cents
        "currency": "BRL",
        "interval": "month",
        "limits": {
            "articles_per_day": -1,
            "ai_generations_per_month": -1,
            "shorts_per_day": -1,
        },
    },
}

TIER_HIERARCHY = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.PREMIUM: 1,
    SubscriptionTier.PRO: 2,
}


def _coerce_tier(tier: "SubscriptionTier | str") -> SubscriptionTier:
    try:
        return SubscriptionTier(tier)
    except ValueError:
        return SubscriptionTier.FREE


def get_plan(tier: "SubscriptionTier | str") -> dict:
    """Get the plan for a tier. Unknown tiers get the free plan."""
    return SUBSCRIPTION_PLANS[_coerce_tier(tier).value]


def tier_rank(tier: "SubscriptionTier | str") -> int:
    """Position of a tier in the hierarchy (free = 0)."""
    return TIER_HIERARCHY[_coerce_tier(tier)]


def can_access_feature(
    user_tier: "SubscriptionTier | str",
    required_tier: "SubscriptionTier | str",
) -> bool:
    """Check if ``user_tier`` is at or above ``required_tier``."""
    return tier_rank(user_tier) >= tier_rank(required_tier)
