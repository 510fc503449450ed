"""
Billing Event Schemas
=====================

Pydantic models for the parts of Stripe webhook payloads the reconciler
reads, plus the closed set of event kinds it dispatches on.

Stripe objects carry many more fields than modelled here; unknown fields are
ignored so new API versions don't break parsing.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─── Event kinds ─────────────────────────────────────────────────────────────


class BillingEventKind(str, Enum):
    """Stripe event types handled by the reconciler."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "BillingEventKind":
        """Map a Stripe event type string to a kind; anything else is UNRECOGNIZED."""
        if not event_type or event_type == cls.UNRECOGNIZED.value:
            return cls.UNRECOGNIZED
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNRECOGNIZED


def _expandable_id(value: Any) -> Any:
    """Stripe references may arrive expanded as objects; keep only the id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _user_id_from_metadata(metadata: dict[str, str]) -> Optional[str]:
    return metadata.get("userId") or metadata.get("user_id") or None


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ─── Subscription ────────────────────────────────────────────────────────────


class StripePrice(_StripeObject):
    id: Optional[str] = None


class StripeSubscriptionItem(_StripeObject):
    price: Optional[StripePrice] = None
    # Newer API versions report the billing period per item
    current_period_end: Optional[int] = None


class StripeSubscriptionItems(_StripeObject):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(_StripeObject):
    """A ``subscription`` object, from an event or from the REST API."""

    id: str
    customer: Optional[str] = None
    status: str
    current_period_end: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)

    @field_validator("customer", mode="before")
    @classmethod
    def expand_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def user_id(self) -> Optional[str]:
        """Our user id, set as subscription metadata at checkout."""
        return _user_id_from_metadata(self.metadata)

    @property
    def price_id(self) -> Optional[str]:
        """Price of the first line item."""
        if not self.items.data or self.items.data[0].price is None:
            return None
        return self.items.data[0].price.id

    @property
    def period_end(self) -> Optional[datetime]:
        """End of the current billing period as an aware datetime."""
        ts = self.current_period_end
        if ts is None and self.items.data:
            ts = self.items.data[0].current_period_end
        if ts is None:
            return None
        return datetime.fromtimestamp(ts, tz=timezone.utc)


# ─── Invoice ─────────────────────────────────────────────────────────────────


class StripeInvoice(_StripeObject):
    """An ``invoice`` object."""

    id: str
    subscription: Optional[str] = None
    customer: Optional[str] = None
    attempt_count: int = 0
    amount_paid: Optional[int] = None
    currency: Optional[str] = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def expand_refs(cls, value: Any) -> Any:
        return _expandable_id(value)

    @model_validator(mode="before")
    @classmethod
    def subscription_from_parent(cls, data: Any) -> Any:
        # Since 2025 API versions the subscription id moved under
        # parent.subscription_details.subscription
        if isinstance(data, dict) and not data.get("subscription"):
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data


# ─── Checkout ────────────────────────────────────────────────────────────────


class StripeCheckoutSession(_StripeObject):
    """A ``checkout.session`` object."""

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    mode: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_refs(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def user_id(self) -> Optional[str]:
        """Our user id, set as session metadata when checkout was created."""
        return _user_id_from_metadata(self.metadata)


# ─── Event envelope ──────────────────────────────────────────────────────────


class StripeEventData(_StripeObject):
    object: dict[str, Any] = Field(default_factory=dict)


class StripeEvent(_StripeObject):
    """
    Envelope of a Stripe webhook event.

    ``{"id": "evt_...", "type": "...", "created": 1700000000,
    "data": {"object": {...}}}``
    """

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: StripeEventData = Field(default_factory=StripeEventData)

    @property
    def kind(self) -> BillingEventKind:
        return BillingEventKind.from_type(self.type)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object
