"""
Stripe Client
=============

Thin async wrapper around the Stripe SDK for the one read the reconciler
needs: a subscription's canonical state.

An instance is created per request with its configuration passed in
explicitly. It owns its own ``stripe.StripeClient`` pinned to a fixed API
version, so nothing here touches the SDK's module-level globals.
"""

import logging
from typing import Optional

import stripe
from pydantic import ValidationError

from app.core.errors import ProviderFetchError
from app.schemas.billing import StripeSubscription

logger = logging.getLogger(__name__)


class StripeClient:
    """Read-only Stripe API client."""

    DEFAULT_API_VERSION = "2023-10-16"

    def __init__(
        self,
        api_key: str,
        *,
        api_version: str = DEFAULT_API_VERSION,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        sdk_client: Optional[stripe.StripeClient] = None,
    ):
        self.api_key = api_key
        self.api_version = api_version
        self.base_url = base_url
        self.timeout = timeout
        self._sdk = sdk_client
        self._http_client: Optional[stripe.HTTPXClient] = None

    def _get_sdk(self) -> stripe.StripeClient:
        if self._sdk is None:
            # No SDK retries: a failed fetch answers 500 and Stripe redelivers
            self._http_client = stripe.HTTPXClient(timeout=self.timeout)
            self._sdk = stripe.StripeClient(
                self.api_key,
                stripe_version=self.api_version,
                base_addresses={"api": self.base_url} if self.base_url else {},
                max_network_retries=0,
                http_client=self._http_client,
            )
        return self._sdk

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created one."""
        if self._http_client is not None:
            await self._http_client.close_async()
            self._http_client = None

    async def __aenter__(self) -> "StripeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def get_subscription(self, subscription_id: str) -> StripeSubscription:
        """
        Fetch a subscription's current state from Stripe.

        Args:
            subscription_id: Stripe subscription ID (``sub_...``).

        Returns:
            The subscription as Stripe currently reports it.

        Raises:
            ProviderFetchError: On missing API key, any Stripe API error
                (connection, timeout, auth, not found, rate limit) or an
                unparseable subscription.
        """
        if not self.api_key:
            raise ProviderFetchError("STRIPE_SECRET_KEY not configured")

        try:
            subscription = await self._get_sdk().subscriptions.retrieve_async(
                subscription_id
            )
        except stripe.StripeError as e:
            logger.error(
                "Stripe API error for subscription %s (status=%s): %s",
                subscription_id,
                e.http_status,
                e.user_message or e,
            )
            raise ProviderFetchError(f"Error fetching {subscription_id}") from e

        try:
            return StripeSubscription.model_validate(subscription.to_dict())
        except ValidationError as e:
            logger.error("Unparseable Stripe subscription %s: %s", subscription_id, e)
            raise ProviderFetchError(f"Bad payload for {subscription_id}") from e
