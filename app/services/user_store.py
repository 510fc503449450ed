"""
User Store
==========

Read and update-by-id access to the subscription state on the ``users`` row.

Every write is a single ``UPDATE`` statement carrying the complete new
snapshot. Two webhooks for the same user racing each other therefore
interleave at statement granularity only: the row ends up with one of the
two snapshots, never a mix of fields from both.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Optional

from sqlalchemy import and_, case, func, literal, not_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import StoreError
from app.models.subscription import (
    SubscriptionChange,
    SubscriptionEvent,
    SubscriptionTier,
    UserRole,
)
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionState:
    """Subscription fields of a user as currently stored."""

    user_id: str
    tier: SubscriptionTier
    status: Optional[str]
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    current_period_end: Optional[datetime]
    role: UserRole


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Complete subscription state to write for a user.

    ``stripe_customer_id`` is only applied when the user has none yet.
    ``promote_to_creator`` lifts a reader to creator; other roles are kept.
    """

    tier: SubscriptionTier
    status: Optional[str]
    stripe_subscription_id: Optional[str]
    current_period_end: Optional[datetime]
    stripe_customer_id: Optional[str] = None
    promote_to_creator: bool = False


class UserStore:
    """SQLAlchemy-backed store for user subscription state."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_state(self, user_id: str) -> Optional[SubscriptionState]:
        """Load the stored subscription state, or None if the user doesn't exist."""
        stmt = select(
            User.user_id,
            User.subscription_tier,
            User.subscription_status,
            User.stripe_customer_id,
            User.stripe_subscription_id,
            User.subscription_current_period_end,
            User.role,
        ).where(User.user_id == user_id)

        try:
            result = await self.db.execute(stmt)
            row = result.one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load user {user_id}") from e

        if row is None:
            return None

        return SubscriptionState(
            user_id=row.user_id,
            tier=row.subscription_tier,
            status=row.subscription_status,
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            current_period_end=row.subscription_current_period_end,
            role=row.role,
        )

    async def write_snapshot(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        skip_if_older: bool = False,
    ) -> bool:
        """
        Overwrite the user's subscription state with ``snapshot``.

        Args:
            user_id: User to update.
            snapshot: Full new state.
            skip_if_older: Leave the row untouched when it already holds the
                same subscription with a later period end.

        Returns:
            True if a row was updated.

        Raises:
            StoreError: If the database rejects the write.
        """
        values: dict[str, Any] = {
            "subscription_tier": snapshot.tier,
            "subscription_status": snapshot.status,
            "stripe_subscription_id": snapshot.stripe_subscription_id,
            "subscription_current_period_end": snapshot.current_period_end,
        }
        if snapshot.stripe_customer_id:
            values["stripe_customer_id"] = func.coalesce(
                User.stripe_customer_id, snapshot.stripe_customer_id
            )
        if snapshot.promote_to_creator:
            values["role"] = case(
                # Bind through the column type so the enum is stored by name
                (User.role == UserRole.READER, literal(UserRole.CREATOR, User.role.type)),
                else_=User.role,
            )

        stmt = update(User).where(User.user_id == user_id)
        if skip_if_older and snapshot.current_period_end is not None:
            stmt = stmt.where(
                not_(
                    and_(
                        # is_not(None) keeps NULL columns from turning the
                        # whole predicate NULL
                        User.stripe_subscription_id.is_not(None),
                        User.subscription_current_period_end.is_not(None),
                        User.stripe_subscription_id == snapshot.stripe_subscription_id,
                        User.subscription_current_period_end > snapshot.current_period_end,
                    )
                )
            )
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update user {user_id}") from e

        return result.rowcount > 0

    async def record_customer(self, user_id: str, customer_id: str) -> bool:
        """Attach a Stripe customer id to the user unless one is already set."""
        stmt = (
            update(User)
            .where(User.user_id == user_id)
            .values(stripe_customer_id=func.coalesce(User.stripe_customer_id, customer_id))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record customer for user {user_id}") from e

        return result.rowcount > 0

    async def log_event(
        self,
        *,
        user_id: str,
        stripe_event_id: Optional[str],
        event_type: str,
        change: SubscriptionChange,
        previous: Optional[SubscriptionState],
        snapshot: SubscriptionSnapshot,
        event_data: Optional[dict] = None,
    ) -> None:
        """Append an entry to the subscription event log."""
        entry = SubscriptionEvent(
            user_id=user_id,
            stripe_event_id=stripe_event_id,
            event_type=event_type,
            change=change,
            previous_tier=previous.tier if previous else None,
            new_tier=snapshot.tier,
            previous_status=previous.status if previous else None,
            new_status=snapshot.status,
            stripe_subscription_id=snapshot.stripe_subscription_id,
            event_data=event_data,
        )
        self.db.add(entry)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to log subscription event for {user_id}") from e
