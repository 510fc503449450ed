"""
Common Dependencies
===================

Request-scoped collaborators for the billing endpoints.

Each request gets its own database session, Stripe client and reconciler;
nothing here is shared across requests.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.session import get_db
from app.services.reconciler import SubscriptionReconciler
from app.services.stripe_client import StripeClient
from app.services.user_store import UserStore

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_stripe_client(
    settings: AppSettings,
) -> AsyncGenerator[StripeClient, None]:
    """Stripe client configured from settings, closed after the request."""
    async with StripeClient(
        api_key=settings.STRIPE_SECRET_KEY,
        api_version=settings.STRIPE_API_VERSION,
        base_url=settings.STRIPE_API_BASE,
        timeout=settings.STRIPE_API_TIMEOUT,
    ) as client:
        yield client


def get_user_store(db: DBSession) -> UserStore:
    return UserStore(db)


def get_reconciler(
    settings: AppSettings,
    store: Annotated[UserStore, Depends(get_user_store)],
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
) -> SubscriptionReconciler:
    """Reconciler wired with this request's store and Stripe client."""
    return SubscriptionReconciler(
        store=store,
        stripe_client=stripe_client,
        price_tiers=settings.price_tier_map,
        failed_payment_threshold=settings.INVOICE_FAILURE_DOWNGRADE_ATTEMPTS,
        reject_stale_events=settings.STRIPE_REJECT_STALE_EVENTS,
    )


UserStoreDep = Annotated[UserStore, Depends(get_user_store)]
Reconciler = Annotated[SubscriptionReconciler, Depends(get_reconciler)]
