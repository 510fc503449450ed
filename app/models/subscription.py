"""
Subscription Models
===================

Subscription enums and the audit log of reconciled Stripe events.

The subscription state itself lives on the ``users`` row (see
``app.models.user``); this module only holds the tier/role vocabularies and
the append-only event log.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, generate_id


class SubscriptionTier(str, Enum):
    """Subscription tier levels."""
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class UserRole(str, Enum):
    """Platform roles. Only ever promoted by billing, never demoted."""
    READER = "reader"
    CREATOR = "creator"
    ADMIN = "admin"


class SubscriptionChange(str, Enum):
    """Classification of a reconciled transition, for the event log."""
    ACTIVATION = "activation"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCELLATION = "cancellation"
    PAYMENT_FAILURE = "payment_failure"
    REFRESH = "refresh"


class SubscriptionEvent(Base):
    """
    Subscription event log.

    One row per transition applied by the reconciler, written in the same
    transaction as the snapshot update.
    """

    __tablename__ = "subscription_events"

    # Primary Key
    event_log_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=generate_id,
    )

    # Foreign Key
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Provider event
    stripe_event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    change: Mapped[SubscriptionChange] = mapped_column(
        SQLEnum(SubscriptionChange),
        nullable=False,
    )

    # Transition
    previous_tier: Mapped[Optional[SubscriptionTier]] = mapped_column(
        SQLEnum(SubscriptionTier),
        nullable=True,
    )
    new_tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier),
        nullable=False,
    )
    previous_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    new_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Raw event object from Stripe
    event_data: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Indexes
    __table_args__ = (
        Index("idx_sub_events_user", "user_id", "created_at"),
        Index("idx_sub_events_stripe_event", "stripe_event_id"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(user_id={self.user_id}, change={self.change})>"
