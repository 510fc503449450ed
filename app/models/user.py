"""
User Model
==========

SQLAlchemy model for user accounts, including the subscription state that
the Stripe reconciler owns.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, generate_id
from app.models.subscription import SubscriptionTier, UserRole


class User(Base, TimestampMixin):
    """
    User account model.

    Subscription columns are written only by the reconciler, always as a
    complete snapshot in a single UPDATE.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=generate_id,
    )

    # Account fields
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole),
        default=UserRole.READER,
        nullable=False,
    )

    # Subscription state
    subscription_tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier),
        default=SubscriptionTier.FREE,
        nullable=False,
    )
    subscription_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,  # Passthrough of Stripe's status string
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )
    subscription_current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<User(user_id={self.user_id}, tier={self.subscription_tier}, "
            f"status={self.subscription_status})>"
        )

    @property
    def is_paid(self) -> bool:
        """Check if user is on a paid tier."""
        return self.subscription_tier != SubscriptionTier.FREE
