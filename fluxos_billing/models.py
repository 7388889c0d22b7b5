"""
Billing data models.

Provider-side records (customers, subscriptions, sessions, invoices) mirror
the Stripe fields the billing core reads. Client-facing records serialize to
the camelCase shape the frontend caches.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class SubscriptionStatus(str, Enum):
    """Standard Stripe subscription statuses."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


def to_unix(value: datetime | None) -> int | None:
    """Convert a datetime to a unix timestamp."""
    if value is None:
        return None
    return int(value.timestamp())


def from_unix(value: int | float | None) -> datetime | None:
    """Convert a unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO 8601 with a trailing Z, as browsers expect."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Customer:
    """Stripe customer."""

    id: str
    email: str | None = None
    name: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("user_id")


@dataclass
class Price:
    """Stripe price."""

    id: str
    product_id: str | None = None
    unit_amount: int | None = None  # in cents
    currency: str = "usd"
    recurring_interval: str | None = None  # "month", "year"


@dataclass
class SubscriptionItem:
    """One line item of a subscription."""

    id: str
    price: Price


@dataclass
class Subscription:
    """Stripe subscription."""

    id: str
    customer_id: str | None
    status: SubscriptionStatus
    items: list[SubscriptionItem] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    start_date: datetime | None = None
    # Populated only when the customer was expanded on the listing
    customer_email: str | None = None
    customer_name: str | None = None

    @property
    def price(self) -> Price | None:
        return self.items[0].price if self.items else None

    @property
    def price_id(self) -> str:
        return self.price.id if self.price else ""

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("user_id")


@dataclass
class CheckoutSession:
    """Stripe Checkout session."""

    id: str
    url: str
    customer_id: str | None = None
    subscription_id: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None
    client_reference_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    status: str | None = "open"
    payment_status: str | None = "unpaid"


@dataclass
class Invoice:
    """Stripe invoice."""

    id: str
    total: int  # in cents
    status: str
    created: datetime
    customer_id: str | None = None


@dataclass
class Page(Generic[T]):
    """One page of a cursor-paginated listing."""

    data: list[T]
    has_more: bool = False


@dataclass
class NormalizedSubscriptionRecord:
    """Subscription view returned to the frontend for local caching."""

    subscription_id: str
    email: str
    plan_id: str
    status: str
    start_date: str
    renewal_date: str
    expires_at: str
    auto_renew: bool
    customer_id: str | None
    checkout_session_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "email": self.email,
            "planId": self.plan_id,
            "status": self.status,
            "startDate": self.start_date,
            "renewalDate": self.renewal_date,
            "expiresAt": self.expires_at,
            "autoRenew": self.auto_renew,
            "customerId": self.customer_id,
            "checkoutSessionId": self.checkout_session_id,
        }


@dataclass
class SubscriptionSummary:
    """Minimal subscription fields for a status lookup."""

    subscription_id: str
    status: str
    plan_id: str | None
    interval: str | None
    amount: int | None
    current_period_start: int | None
    current_period_end: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "status": self.status,
            "planId": self.plan_id,
            "interval": self.interval,
            "amount": self.amount,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
        }
