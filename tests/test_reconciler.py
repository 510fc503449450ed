"""
Subscription Reconciler Tests
=============================

Tests for the Stripe event → subscription state machine including:
- Subscription created/updated snapshots and price → tier mapping
- Pro tier role promotion (never demotion)
- Deletion downgrade
- Invoice success refresh and failed-payment threshold
- Checkout completion
- Unresolvable / unknown / malformed events
- Replay idempotence and the optional stale-event guard
"""

from datetime import datetime, timezone

import pytest

from app.core.errors import ProviderFetchError
from app.models.subscription import SubscriptionChange, SubscriptionTier, UserRole
from app.services.reconciler import (
    ReconcileResult,
    SubscriptionReconciler,
    tier_for_price,
)

from tests.conftest import (
    PERIOD_END,
    PRICE_TIERS,
    USER_ID,
    make_checkout_session,
    make_event,
    make_invoice,
    make_subscription,
)

PERIOD_END_DT = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


class TestTierForPrice:
    """Tests for the static price → tier table."""

    def test_mapped_prices(self):
        assert tier_for_price("price_premium", PRICE_TIERS) == SubscriptionTier.PREMIUM
        assert tier_for_price("price_pro", PRICE_TIERS) == SubscriptionTier.PRO

    @pytest.mark.parametrize("price_id", ["price_unknown", "", None, "PRICE_PRO"])
    def test_unmapped_prices_are_free(self, price_id):
        assert tier_for_price(price_id, PRICE_TIERS) == SubscriptionTier.FREE

    def test_mapping_to_unknown_tier_is_free(self):
        assert tier_for_price("price_x", {"price_x": "platinum"}) == SubscriptionTier.FREE


class TestSubscriptionUpsert:
    """Tests for customer.subscription.created / updated."""

    @pytest.mark.asyncio
    async def test_created_with_pro_price_promotes_to_creator(self, reconciler, store):
        store.add_user()
        event = make_event(
            "customer.subscription.created",
            make_subscription(price_id="price_pro"),
        )

        outcome = await reconciler.reconcile(event)

        assert outcome.result == ReconcileResult.APPLIED
        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.PRO
        assert state.status == "active"
        assert state.role == UserRole.CREATOR
        assert state.stripe_subscription_id == "sub_123"
        assert state.current_period_end == PERIOD_END_DT
        assert state.stripe_customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_premium_does_not_touch_role(self, reconciler, store):
        store.add_user()
        event = make_event("customer.subscription.updated", make_subscription())

        await reconciler.reconcile(event)

        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.PREMIUM
        assert state.role == UserRole.READER

    @pytest.mark.asyncio
    async def test_downgrade_from_pro_keeps_creator_role(self, reconciler, store):
        store.add_user(
            tier=SubscriptionTier.PRO,
            status="active",
            role=UserRole.CREATOR,
            stripe_subscription_id="sub_123",
        )
        event = make_event("customer.subscription.updated", make_subscription())

        await reconciler.reconcile(event)

        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.PREMIUM
        assert state.role == UserRole.CREATOR

    @pytest.mark.asyncio
    async def test_admin_is_not_demoted_to_creator(self, reconciler, store):
        store.add_user(role=UserRole.ADMIN)
        event = make_event(
            "customer.subscription.created", make_subscription(price_id="price_pro")
        )

        await reconciler.reconcile(event)

        assert store.users[USER_ID].role == UserRole.ADMIN

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price_id", ["price_legacy", "price_other", None])
    async def test_unmapped_price_is_free(self, reconciler, store, price_id):
        store.add_user(tier=SubscriptionTier.PRO, stripe_subscription_id="sub_123")
        event = make_event(
            "customer.subscription.updated", make_subscription(price_id=price_id)
        )

        await reconciler.reconcile(event)

        assert store.users[USER_ID].tier == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_status_is_passed_through(self, reconciler, store):
        store.add_user()
        event = make_event(
            "customer.subscription.updated", make_subscription(status="past_due")
        )

        await reconciler.reconcile(event)

        assert store.users[USER_ID].status == "past_due"

    @pytest.mark.asyncio
    async def test_same_event_twice_is_idempotent(self, reconciler, store):
        store.add_user()
        event = make_event(
            "customer.subscription.updated", make_subscription(price_id="price_pro")
        )

        await reconciler.reconcile(event)
        first = store.users[USER_ID]
        await reconciler.reconcile(event)

        assert store.users[USER_ID] == first

    @pytest.mark.asyncio
    async def test_existing_customer_id_is_never_replaced(self, reconciler, store):
        store.add_user(stripe_customer_id="cus_original")
        event = make_event(
            "customer.subscription.updated", make_subscription(customer="cus_other")
        )

        await reconciler.reconcile(event)

        assert store.users[USER_ID].stripe_customer_id == "cus_original"

    @pytest.mark.asyncio
    async def test_missing_user_metadata_is_unresolvable(self, reconciler, store):
        store.add_user()
        event = make_event(
            "customer.subscription.updated", make_subscription(user_id=None)
        )

        outcome = await reconciler.reconcile(event)

        assert outcome.result == ReconcileResult.UNRESOLVABLE
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_snake_case_user_metadata_is_accepted(self, reconciler, store):
        store.add_user()
        sub = make_subscription(user_id=None)
        sub["metadata"] = {"user_id": USER_ID}

        outcome = await reconciler.reconcile(
            make_event("customer.subscription.updated", sub)
        )

        assert outcome.result == ReconcileResult.APPLIED

    @pytest.mark.asyncio
    async def test_unknown_user_is_acknowledged(self, reconciler, store):
        event = make_event("customer.subscription.updated", make_subscription())

        outcome = await reconciler.reconcile(event)

        assert outcome.result == ReconcileResult.USER_NOT_FOUND
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_event_is_logged_with_classification(self, reconciler, store):
        store.add_user()
        event = make_event(
            "customer.subscription.created", make_subscription(price_id="price_pro")
        )

        await reconciler.reconcile(event)

        assert len(store.events) == 1
        entry = store.events[0]
        assert entry["change"] == SubscriptionChange.ACTIVATION
        assert entry["stripe_event_id"] == "evt_123"
        assert entry["previous"].tier == SubscriptionTier.FREE
        assert entry["snapshot"].tier == SubscriptionTier.PRO


class TestSubscriptionDeleted:
    """Tests for customer.subscription.deleted."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "prior_tier",
        [SubscriptionTier.FREE, SubscriptionTier.PREMIUM, SubscriptionTier.PRO],
    )
    async def test_downgrades_to_free_and_clears_subscription(
        self, reconciler, store, prior_tier
    ):
        store.add_user(
            tier=prior_tier,
            status="active",
            stripe_subscription_id="sub_123",
            role=UserRole.CREATOR,
        )
        event = make_event(
            "customer.subscription.deleted",
            make_subscription(price_id="price_pro", status="canceled"),
        )

        outcome = await reconciler.reconcile(event)

        assert outcome.result == ReconcileResult.APPLIED
        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.FREE
        assert state.status == "canceled"
        assert state.stripe_subscription_id is None
        # Role is never auto-demoted
        assert state.role == UserRole.CREATOR
        assert store.events[-1]["change"] == SubscriptionChange.CANCELLATION


class TestInvoicePaymentSucceeded:
    """Tests for invoice.payment_succeeded."""

    @pytest.mark.asyncio
    async def test_refreshes_from_stripe(self, reconciler, store, stripe_client):
        store.add_user()
        stripe_client.subscriptions["sub_123"] = make_subscription(price_id="price_pro")

        outcome = await reconciler.reconcile(
            make_event("invoice.payment_succeeded", make_invoice())
        )

        assert outcome.result == ReconcileResult.APPLIED
        assert stripe_client.calls == ["sub_123"]
        assert store.users[USER_ID].tier == SubscriptionTier.PRO

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_ignored(
        self, reconciler, store, stripe_client
    ):
        store.add_user()

        outcome = await reconciler.reconcile(
            make_event("invoice.payment_succeeded", make_invoice(subscription=None))
        )

        assert outcome.result == ReconcileResult.IGNORED
        assert stripe_client.calls == []

    @pytest.mark.asyncio
    async def test_subscription_from_invoice_parent(self, reconciler, store, stripe_client):
        store.add_user()
        stripe_client.subscriptions["sub_456"] = make_subscription(sub_id="sub_456")
        invoice = make_invoice(subscription=None)
        invoice["parent"] = {"subscription_details": {"subscription": "sub_456"}}

        await reconciler.reconcile(make_event("invoice.payment_succeeded", invoice))

        assert stripe_client.calls == ["sub_456"]
        assert store.users[USER_ID].stripe_subscription_id == "sub_456"

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, reconciler, store, stripe_client):
        store.add_user()

        with pytest.raises(ProviderFetchError):
            await reconciler.reconcile(
                make_event("invoice.payment_succeeded", make_invoice())
            )

        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_same_tier_is_logged_as_renewal(self, reconciler, store, stripe_client):
        store.add_user(tier=SubscriptionTier.PREMIUM, stripe_subscription_id="sub_123")
        stripe_client.subscriptions["sub_123"] = make_subscription()

        await reconciler.reconcile(make_event("invoice.payment_succeeded", make_invoice()))

        assert store.events[-1]["change"] == SubscriptionChange.RENEWAL


class TestInvoicePaymentFailed:
    """Tests for invoice.payment_failed."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [0, 1, 2])
    async def test_early_failures_change_nothing(
        self, reconciler, store, stripe_client, attempts
    ):
        before = store.add_user(
            tier=SubscriptionTier.PREMIUM,
            status="active",
            stripe_subscription_id="sub_123",
        )
        stripe_client.subscriptions["sub_123"] = make_subscription()

        outcome = await reconciler.reconcile(
            make_event("invoice.payment_failed", make_invoice(attempt_count=attempts))
        )

        assert outcome.result == ReconcileResult.IGNORED
        assert store.users[USER_ID] == before
        assert store.writes == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [3, 4, 10])
    async def test_repeated_failures_force_free_incomplete(
        self, reconciler, store, stripe_client, attempts
    ):
        store.add_user(
            tier=SubscriptionTier.PRO, status="past_due", stripe_subscription_id="sub_123"
        )
        stripe_client.subscriptions["sub_123"] = make_subscription(
            price_id="price_pro", status="past_due"
        )

        outcome = await reconciler.reconcile(
            make_event("invoice.payment_failed", make_invoice(attempt_count=attempts))
        )

        assert outcome.result == ReconcileResult.APPLIED
        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.FREE
        assert state.status == "incomplete"
        assert store.events[-1]["change"] == SubscriptionChange.PAYMENT_FAILURE

    @pytest.mark.asyncio
    async def test_second_then_third_attempt(self, reconciler, store, stripe_client):
        before = store.add_user(
            tier=SubscriptionTier.PREMIUM,
            status="past_due",
            stripe_subscription_id="sub_123",
        )
        stripe_client.subscriptions["sub_123"] = make_subscription(status="past_due")

        await reconciler.reconcile(
            make_event(
                "invoice.payment_failed",
                make_invoice(attempt_count=2),
                event_id="evt_attempt_2",
            )
        )
        assert store.users[USER_ID] == before

        await reconciler.reconcile(
            make_event(
                "invoice.payment_failed",
                make_invoice(attempt_count=3),
                event_id="evt_attempt_3",
            )
        )
        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.FREE
        assert state.status == "incomplete"

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, store, stripe_client):
        reconciler = SubscriptionReconciler(
            store=store,
            stripe_client=stripe_client,
            price_tiers=PRICE_TIERS,
            failed_payment_threshold=5,
        )
        store.add_user(tier=SubscriptionTier.PREMIUM, stripe_subscription_id="sub_123")
        stripe_client.subscriptions["sub_123"] = make_subscription()

        outcome = await reconciler.reconcile(
            make_event("invoice.payment_failed", make_invoice(attempt_count=4))
        )

        assert outcome.result == ReconcileResult.IGNORED
        assert store.users[USER_ID].tier == SubscriptionTier.PREMIUM


class TestCheckoutCompleted:
    """Tests for checkout.session.completed."""

    @pytest.mark.asyncio
    async def test_applies_fetched_subscription(self, reconciler, store, stripe_client):
        store.add_user()
        stripe_client.subscriptions["sub_123"] = make_subscription(price_id="price_pro")

        outcome = await reconciler.reconcile(
            make_event("checkout.session.completed", make_checkout_session())
        )

        assert outcome.result == ReconcileResult.APPLIED
        state = store.users[USER_ID]
        assert state.tier == SubscriptionTier.PRO
        assert state.role == UserRole.CREATOR
        assert state.stripe_customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_uses_session_user_when_subscription_has_no_metadata(
        self, reconciler, store, stripe_client
    ):
        store.add_user()
        stripe_client.subscriptions["sub_123"] = make_subscription(user_id=None)

        outcome = await reconciler.reconcile(
            make_event("checkout.session.completed", make_checkout_session())
        )

        assert outcome.result == ReconcileResult.APPLIED
        assert outcome.user_id == USER_ID

    @pytest.mark.asyncio
    async def test_without_subscription_records_customer_only(
        self, reconciler, store, stripe_client
    ):
        store.add_user()

        outcome = await reconciler.reconcile(
            make_event(
                "checkout.session.completed",
                make_checkout_session(subscription=None, customer="cus_new"),
            )
        )

        assert outcome.result == ReconcileResult.CUSTOMER_RECORDED
        assert outcome.changed_state
        assert stripe_client.calls == []
        state = store.users[USER_ID]
        assert state.stripe_customer_id == "cus_new"
        assert state.tier == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_missing_user_metadata_is_unresolvable(self, reconciler, store):
        store.add_user()

        outcome = await reconciler.reconcile(
            make_event("checkout.session.completed", make_checkout_session(user_id=None))
        )

        assert outcome.result == ReconcileResult.UNRESOLVABLE
        assert store.writes == 0


class TestUnrecognizedAndMalformed:
    """Tests for events outside the handled set."""

    @pytest.mark.asyncio
    async def test_unknown_type_is_noop(self, reconciler, store, stripe_client):
        store.add_user()

        outcome = await reconciler.reconcile(
            make_event("customer.created", {"id": "cus_123"})
        )

        assert outcome.result == ReconcileResult.UNRECOGNIZED
        assert store.writes == 0
        assert stripe_client.calls == []

    @pytest.mark.asyncio
    async def test_malformed_object_is_unresolvable(self, reconciler, store):
        store.add_user()

        outcome = await reconciler.reconcile(
            make_event("customer.subscription.updated", {"id": "sub_123"})
        )

        assert outcome.result == ReconcileResult.UNRESOLVABLE
        assert store.writes == 0


class TestStaleEventGuard:
    """Tests for the optional stale snapshot guard."""

    @pytest.mark.asyncio
    async def test_last_write_wins_by_default(self, reconciler, store):
        store.add_user()
        newer = make_subscription(price_id="price_pro", current_period_end=PERIOD_END + 86400)
        older = make_subscription(price_id="price_premium")

        await reconciler.reconcile(make_event("customer.subscription.updated", newer))
        await reconciler.reconcile(make_event("customer.subscription.updated", older))

        assert store.users[USER_ID].tier == SubscriptionTier.PREMIUM

    @pytest.mark.asyncio
    async def test_older_snapshot_is_skipped_when_enabled(self, store, stripe_client):
        reconciler = SubscriptionReconciler(
            store=store,
            stripe_client=stripe_client,
            price_tiers=PRICE_TIERS,
            reject_stale_events=True,
        )
        store.add_user()
        newer = make_subscription(price_id="price_pro", current_period_end=PERIOD_END + 86400)
        older = make_subscription(price_id="price_premium")

        await reconciler.reconcile(make_event("customer.subscription.updated", newer))
        outcome = await reconciler.reconcile(
            make_event("customer.subscription.updated", older)
        )

        assert outcome.result == ReconcileResult.STALE
        assert store.users[USER_ID].tier == SubscriptionTier.PRO
