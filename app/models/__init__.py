"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for relationships.
"""

from app.models.user import User
from app.models.subscription import (
    SubscriptionChange,
    SubscriptionEvent,
    SubscriptionTier,
    UserRole,
)

__all__ = [
    # User
    "User",
    # Subscription
    "SubscriptionChange",
    "SubscriptionEvent",
    "SubscriptionTier",
    "UserRole",
]
