"""
Subscription Reconciler
=======================

Maps verified Stripe webhook events onto the subscription state stored for
a user.

Handles:
- checkout.session.completed      -> record customer, refresh subscription
- customer.subscription.created   -> apply subscription snapshot
- customer.subscription.updated   -> apply subscription snapshot
- customer.subscription.deleted   -> downgrade to free / canceled
- invoice.payment_succeeded       -> refresh subscription
- invoice.payment_failed          -> downgrade after repeated failures
- anything else                   -> acknowledged no-op

Ordering:
    Events are not ordered by timestamp. Every transition writes a complete
    snapshot derived from Stripe's current view of the subscription, so
    replays converge and the last write wins. A late, stale
    ``customer.subscription.updated`` can transiently overwrite newer state;
    set ``STRIPE_REJECT_STALE_EVENTS`` to skip snapshots whose period end is
    behind the stored one for the same subscription.
"""

from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import Awaitable, Callable, Mapping, Optional

from pydantic import ValidationError

from app.core.plans import tier_rank
from app.models.subscription import SubscriptionChange, SubscriptionTier
from app.schemas.billing import (
    BillingEventKind,
    StripeCheckoutSession,
    StripeEvent,
    StripeInvoice,
    StripeSubscription,
)
from app.services.stripe_client import StripeClient
from app.services.user_store import (
    SubscriptionSnapshot,
    SubscriptionState,
    UserStore,
)

logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    """What happened to an event."""
    APPLIED = "applied"
    IGNORED = "ignored"
    UNRESOLVABLE = "unresolvable"
    USER_NOT_FOUND = "user_not_found"
    STALE = "stale"
    UNRECOGNIZED = "unrecognized"
    CUSTOMER_RECORDED = "customer_recorded"


@dataclass(frozen=True)
class ReconcileOutcome:
    result: ReconcileResult
    user_id: Optional[str] = None
    snapshot: Optional[SubscriptionSnapshot] = None

    @property
    def changed_state(self) -> bool:
        return self.result in (ReconcileResult.APPLIED, ReconcileResult.CUSTOMER_RECORDED)


def tier_for_price(
    price_id: Optional[str],
    price_tiers: Mapping[str, str],
) -> SubscriptionTier:
    """Map a Stripe price id to a tier. Unmapped prices are free."""
    if not price_id:
        return SubscriptionTier.FREE
    try:
        return SubscriptionTier(price_tiers.get(price_id, SubscriptionTier.FREE.value))
    except ValueError:
        return SubscriptionTier.FREE


def snapshot_from_subscription(
    subscription: StripeSubscription,
    price_tiers: Mapping[str, str],
) -> SubscriptionSnapshot:
    """Build the full snapshot Stripe's view of ``subscription`` implies."""
    tier = tier_for_price(subscription.price_id, price_tiers)
    return SubscriptionSnapshot(
        tier=tier,
        status=subscription.status,
        stripe_subscription_id=subscription.id,
        current_period_end=subscription.period_end,
        stripe_customer_id=subscription.customer,
        promote_to_creator=tier == SubscriptionTier.PRO,
    )


def classify_change(
    previous: Optional[SubscriptionState],
    snapshot: SubscriptionSnapshot,
    kind: BillingEventKind,
) -> SubscriptionChange:
    """Label a transition for the event log."""
    if kind == BillingEventKind.SUBSCRIPTION_DELETED:
        return SubscriptionChange.CANCELLATION
    if kind == BillingEventKind.INVOICE_PAYMENT_FAILED:
        return SubscriptionChange.PAYMENT_FAILURE

    old_rank = tier_rank(previous.tier) if previous else 0
    new_rank = tier_rank(snapshot.tier)
    if new_rank > old_rank:
        return SubscriptionChange.ACTIVATION if old_rank == 0 else SubscriptionChange.UPGRADE
    if new_rank < old_rank:
        return SubscriptionChange.DOWNGRADE
    if kind == BillingEventKind.INVOICE_PAYMENT_SUCCEEDED:
        return SubscriptionChange.RENEWAL
    return SubscriptionChange.REFRESH


class SubscriptionReconciler:
    """
    Applies Stripe events to user subscription state.

    Stateless between calls: every dependency is passed in, and each call
    computes its snapshot independently of any other in flight.
    """

    def __init__(
        self,
        store: UserStore,
        stripe_client: StripeClient,
        price_tiers: Mapping[str, str],
        *,
        failed_payment_threshold: int = 3,
        reject_stale_events: bool = False,
    ):
        self.store = store
        self.stripe_client = stripe_client
        self.price_tiers = dict(price_tiers)
        self.failed_payment_threshold = failed_payment_threshold
        self.reject_stale_events = reject_stale_events

        self._handlers: dict[
            BillingEventKind,
            Callable[[StripeEvent], Awaitable[ReconcileOutcome]],
        ] = {
            BillingEventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            BillingEventKind.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_succeeded,
            BillingEventKind.INVOICE_PAYMENT_FAILED: self._handle_invoice_failed,
            BillingEventKind.SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            BillingEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            BillingEventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            BillingEventKind.UNRECOGNIZED: self._handle_unrecognized,
        }

    async def reconcile(self, event: StripeEvent) -> ReconcileOutcome:
        """
        Dispatch ``event`` to its handler.

        Returns:
            The outcome; every outcome is acknowledged to Stripe.

        Raises:
            ProviderFetchError: If refreshing from Stripe failed.
            StoreError: If the user store write failed.
        """
        handler = self._handlers[event.kind]
        try:
            return await handler(event)
        except ValidationError as e:
            # A known event type whose object lacks required fields can't be
            # fixed by redelivery, so it is dropped like an unlinked event.
            logger.warning(
                "Malformed %s object in event %s: %s", event.type, event.id, e
            )
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _handle_checkout_completed(self, event: StripeEvent) -> ReconcileOutcome:
        session = StripeCheckoutSession.model_validate(event.object)
        user_id = session.user_id
        if not user_id:
            logger.warning("Checkout session %s has no userId metadata", session.id)
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

        if not session.subscription:
            logger.info(
                "Checkout session %s completed without subscription: user=%s",
                session.id,
                user_id,
            )
            if not session.customer:
                return ReconcileOutcome(ReconcileResult.IGNORED, user_id=user_id)
            if not await self.store.record_customer(user_id, session.customer):
                return self._user_not_found(user_id, event)
            return ReconcileOutcome(ReconcileResult.CUSTOMER_RECORDED, user_id=user_id)

        subscription = await self.stripe_client.get_subscription(session.subscription)
        return await self._apply_subscription(
            event, user_id, subscription, customer_id=session.customer
        )

    async def _handle_subscription_upsert(self, event: StripeEvent) -> ReconcileOutcome:
        subscription = StripeSubscription.model_validate(event.object)
        user_id = subscription.user_id
        if not user_id:
            logger.warning(
                "Subscription %s has no userId metadata (%s)", subscription.id, event.type
            )
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

        return await self._apply_subscription(event, user_id, subscription)

    async def _handle_subscription_deleted(self, event: StripeEvent) -> ReconcileOutcome:
        subscription = StripeSubscription.model_validate(event.object)
        user_id = subscription.user_id
        if not user_id:
            logger.warning("Deleted subscription %s has no userId metadata", subscription.id)
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

        snapshot = SubscriptionSnapshot(
            tier=SubscriptionTier.FREE,
            status="canceled",
            stripe_subscription_id=None,
            current_period_end=subscription.period_end,
            stripe_customer_id=subscription.customer,
        )
        return await self._write(event, user_id, snapshot)

    async def _handle_invoice_succeeded(self, event: StripeEvent) -> ReconcileOutcome:
        invoice = StripeInvoice.model_validate(event.object)
        if not invoice.subscription:
            logger.info("Invoice %s paid without subscription, ignoring", invoice.id)
            return ReconcileOutcome(ReconcileResult.IGNORED)

        subscription = await self.stripe_client.get_subscription(invoice.subscription)
        user_id = subscription.user_id
        if not user_id:
            logger.warning(
                "Subscription %s for invoice %s has no userId metadata",
                subscription.id,
                invoice.id,
            )
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

        outcome = await self._apply_subscription(event, user_id, subscription)
        if outcome.changed_state:
            logger.info(
                "Payment succeeded for user %s: %s %s",
                user_id,
                (invoice.amount_paid or 0) / 100,
                invoice.currency,
            )
        return outcome

    async def _handle_invoice_failed(self, event: StripeEvent) -> ReconcileOutcome:
        invoice = StripeInvoice.model_validate(event.object)
        if not invoice.subscription:
            logger.info("Invoice %s failed without subscription, ignoring", invoice.id)
            return ReconcileOutcome(ReconcileResult.IGNORED)

        if invoice.attempt_count < self.failed_payment_threshold:
            logger.warning(
                "Payment failed for subscription %s (attempt %d of %d), no change",
                invoice.subscription,
                invoice.attempt_count,
                self.failed_payment_threshold,
            )
            return ReconcileOutcome(ReconcileResult.IGNORED)

        subscription = await self.stripe_client.get_subscription(invoice.subscription)
        user_id = subscription.user_id
        if not user_id:
            logger.warning(
                "Subscription %s for invoice %s has no userId metadata",
                subscription.id,
                invoice.id,
            )
            return ReconcileOutcome(ReconcileResult.UNRESOLVABLE)

        snapshot = SubscriptionSnapshot(
            tier=SubscriptionTier.FREE,
            status="incomplete",
            stripe_subscription_id=subscription.id,
            current_period_end=subscription.period_end,
            stripe_customer_id=subscription.customer,
        )
        logger.warning(
            "Payment failed %d times for user %s, downgrading to free",
            invoice.attempt_count,
            user_id,
        )
        return await self._write(event, user_id, snapshot)

    async def _handle_unrecognized(self, event: StripeEvent) -> ReconcileOutcome:
        logger.info("Unhandled Stripe event type %s (%s), acknowledging", event.type, event.id)
        return ReconcileOutcome(ReconcileResult.UNRECOGNIZED)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _apply_subscription(
        self,
        event: StripeEvent,
        user_id: str,
        subscription: StripeSubscription,
        customer_id: Optional[str] = None,
    ) -> ReconcileOutcome:
        snapshot = snapshot_from_subscription(subscription, self.price_tiers)
        if customer_id and not snapshot.stripe_customer_id:
            snapshot = replace(snapshot, stripe_customer_id=customer_id)
        if subscription.price_id and snapshot.tier == SubscriptionTier.FREE:
            logger.warning(
                "Price %s on subscription %s is not mapped to a tier, using free",
                subscription.price_id,
                subscription.id,
            )
        return await self._write(
            event, user_id, snapshot, skip_if_older=self.reject_stale_events
        )

    async def _write(
        self,
        event: StripeEvent,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        skip_if_older: bool = False,
    ) -> ReconcileOutcome:
        previous = await self.store.get_state(user_id)
        if previous is None:
            return self._user_not_found(user_id, event)

        if not await self.store.write_snapshot(
            user_id, snapshot, skip_if_older=skip_if_older
        ):
            if skip_if_older:
                logger.info(
                    "Skipping stale %s for user %s: stored period end is newer",
                    event.type,
                    user_id,
                )
                return ReconcileOutcome(ReconcileResult.STALE, user_id=user_id)
            return self._user_not_found(user_id, event)

        await self.store.log_event(
            user_id=user_id,
            stripe_event_id=event.id,
            event_type=event.type,
            change=classify_change(previous, snapshot, event.kind),
            previous=previous,
            snapshot=snapshot,
            event_data=event.object,
        )

        logger.info(
            "Updated user %s subscription to %s (%s)",
            user_id,
            snapshot.tier.value,
            snapshot.status,
        )
        return ReconcileOutcome(ReconcileResult.APPLIED, user_id=user_id, snapshot=snapshot)

    @staticmethod
    def _user_not_found(user_id: str, event: StripeEvent) -> ReconcileOutcome:
        logger.warning("User %s from %s (%s) not found", user_id, event.type, event.id)
        return ReconcileOutcome(ReconcileResult.USER_NOT_FOUND, user_id=user_id)
