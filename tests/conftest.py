"""
Shared Test Fixtures
====================

In-memory stand-ins for the user store and Stripe client, Stripe event
builders, webhook signing, and an HTTP client against the app with its
request-scoped dependencies overridden.
"""

import hashlib
import hmac
import json
import os
import time
from dataclasses import replace
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock, patch

# Settings are read at import time, so configure before importing the app
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_PREMIUM_PRICE_ID"] = "price_premium"
os.environ["STRIPE_PRO_PRICE_ID"] = "price_pro"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.errors import ProviderFetchError
from app.db.session import get_db
from app.dependencies import get_reconciler, get_user_store
from app.main import app
from app.models.subscription import SubscriptionTier, UserRole
from app.schemas.billing import StripeEvent, StripeSubscription
from app.services.reconciler import SubscriptionReconciler
from app.services.user_store import SubscriptionSnapshot, SubscriptionState

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_TIERS = {"price_premium": "premium", "price_pro": "pro"}
USER_ID = "user_123"
PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeUserStore:
    """In-memory user store with the same write semantics as UserStore."""

    def __init__(self):
        self.users: dict[str, SubscriptionState] = {}
        self.writes = 0
        self.events: list[dict[str, Any]] = []

    def add_user(
        self,
        user_id: str = USER_ID,
        *,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        status: Optional[str] = None,
        role: UserRole = UserRole.READER,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        current_period_end=None,
    ) -> SubscriptionState:
        state = SubscriptionState(
            user_id=user_id,
            tier=tier,
            status=status,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            current_period_end=current_period_end,
            role=role,
        )
        self.users[user_id] = state
        return state

    async def get_state(self, user_id: str) -> Optional[SubscriptionState]:
        return self.users.get(user_id)

    async def write_snapshot(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        skip_if_older: bool = False,
    ) -> bool:
        current = self.users.get(user_id)
        if current is None:
            return False
        if (
            skip_if_older
            and snapshot.current_period_end is not None
            and current.stripe_subscription_id is not None
            and current.current_period_end is not None
            and current.stripe_subscription_id == snapshot.stripe_subscription_id
            and current.current_period_end > snapshot.current_period_end
        ):
            return False

        role = current.role
        if snapshot.promote_to_creator and role == UserRole.READER:
            role = UserRole.CREATOR

        self.users[user_id] = replace(
            current,
            tier=snapshot.tier,
            status=snapshot.status,
            stripe_subscription_id=snapshot.stripe_subscription_id,
            current_period_end=snapshot.current_period_end,
            stripe_customer_id=current.stripe_customer_id or snapshot.stripe_customer_id,
            role=role,
        )
        self.writes += 1
        return True

    async def record_customer(self, user_id: str, customer_id: str) -> bool:
        current = self.users.get(user_id)
        if current is None:
            return False
        self.users[user_id] = replace(
            current,
            stripe_customer_id=current.stripe_customer_id or customer_id,
        )
        self.writes += 1
        return True

    async def log_event(self, **kwargs) -> None:
        self.events.append(kwargs)


class FakeStripeClient:
    """Serves subscriptions from a dict; unknown ids fail like the API would."""

    def __init__(self):
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []

    async def get_subscription(self, subscription_id: str) -> StripeSubscription:
        self.calls.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProviderFetchError(f"Stripe returned 404 for {subscription_id}")
        return StripeSubscription.model_validate(self.subscriptions[subscription_id])


# ---------------------------------------------------------------------------
# Stripe object builders
# ---------------------------------------------------------------------------

def make_subscription(
    *,
    sub_id: str = "sub_123",
    price_id: Optional[str] = "price_premium",
    status: str = "active",
    user_id: Optional[str] = USER_ID,
    customer: str = "cus_123",
    current_period_end: int = PERIOD_END,
) -> dict[str, Any]:
    """Build a minimal Stripe subscription object."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": current_period_end,
        "metadata": {"userId": user_id} if user_id else {},
        "items": {
            "object": "list",
            "data": [{"price": {"id": price_id}}] if price_id else [],
        },
    }


def make_invoice(
    *,
    invoice_id: str = "in_123",
    subscription: Optional[str] = "sub_123",
    attempt_count: int = 1,
) -> dict[str, Any]:
    """Build a minimal Stripe invoice object."""
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_123",
        "subscription": subscription,
        "attempt_count": attempt_count,
        "amount_paid": 1900,
        "currency": "brl",
    }


def make_checkout_session(
    *,
    session_id: str = "cs_123",
    subscription: Optional[str] = "sub_123",
    customer: Optional[str] = "cus_123",
    user_id: Optional[str] = USER_ID,
) -> dict[str, Any]:
    """Build a minimal Stripe checkout session object."""
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription" if subscription else "payment",
        "customer": customer,
        "subscription": subscription,
        "metadata": {"userId": user_id} if user_id else {},
    }


def make_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_123",
) -> StripeEvent:
    return StripeEvent.model_validate(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": 1700000000,
            "data": {"object": obj},
        }
    )


def sign_payload(
    payload: bytes,
    secret: str = WEBHOOK_SECRET,
    timestamp: Optional[int] = None,
) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def event_body(event: StripeEvent) -> bytes:
    return json.dumps(event.model_dump(mode="json")).encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def reconciler(store, stripe_client) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        store=store,
        stripe_client=stripe_client,
        price_tiers=PRICE_TIERS,
    )


@pytest.fixture
def db_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def redis_client() -> AsyncMock:
    client = AsyncMock()
    client.exists.return_value = 0
    client.get.return_value = None
    return client


@pytest_asyncio.fixture
async def client(store, reconciler, db_session, redis_client):
    """HTTP client against the app with fakes behind every dependency."""

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_user_store] = lambda: store
    app.dependency_overrides[get_reconciler] = lambda: reconciler

    with patch("app.services.cache.get_redis", return_value=redis_client):
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac

    app.dependency_overrides.clear()
