"""
In-memory Stripe double.

``MockStripeClient`` implements StripeClientInterface without network access
and mirrors the Stripe behaviors the billing core depends on: idempotency
keys, search queries, default list filtering and cursor pagination.
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .client import StripeClientInterface
from .exceptions import (
    StripeCustomerError,
    StripeInvoiceError,
    StripePaymentError,
    StripeSubscriptionError,
)
from .models import (
    CheckoutSession,
    Customer,
    Invoice,
    Page,
    Price,
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    to_unix,
)

_METADATA_QUERY_RE = re.compile(r"^metadata\['(?P<key>[^']+)'\]:'(?P<value>.*)'$")
_EMAIL_QUERY_RE = re.compile(r"^email:'(?P<value>.*)'$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Factory functions for creating test data


def customer_factory(**kwargs: Any) -> Customer:
    """Create a test Customer."""
    return Customer(
        id=kwargs.get("id", f"cus_{uuid.uuid4().hex[:14]}"),
        email=kwargs.get("email", f"test-{uuid.uuid4().hex[:6]}@example.com"),
        name=kwargs.get("name"),
        metadata=kwargs.get("metadata", {}),
        created_at=kwargs.get("created_at", _utcnow()),
    )


def price_factory(**kwargs: Any) -> Price:
    """Create a test Price."""
    return Price(
        id=kwargs.get("id", f"price_{uuid.uuid4().hex[:14]}"),
        product_id=kwargs.get("product_id", f"prod_{uuid.uuid4().hex[:14]}"),
        unit_amount=kwargs.get("unit_amount", 2500),  # $25.00
        currency=kwargs.get("currency", "usd"),
        recurring_interval=kwargs.get("recurring_interval", "month"),
    )


def subscription_factory(**kwargs: Any) -> Subscription:
    """Create a test Subscription.

    Pass ``price`` for full control over the line item, or ``price_id`` /
    ``unit_amount`` / ``product_id`` to build one.
    """
    now = _utcnow()
    price = kwargs.get("price")
    if price is None:
        price_kwargs = {
            key: kwargs[key]
            for key in ("unit_amount", "product_id", "recurring_interval")
            if key in kwargs
        }
        if "price_id" in kwargs:
            price_kwargs["id"] = kwargs["price_id"]
        price = price_factory(**price_kwargs)

    return Subscription(
        id=kwargs.get("id", f"sub_{uuid.uuid4().hex[:14]}"),
        customer_id=kwargs.get("customer_id", f"cus_{uuid.uuid4().hex[:14]}"),
        status=SubscriptionStatus(kwargs.get("status", SubscriptionStatus.ACTIVE)),
        items=[SubscriptionItem(id=f"si_{uuid.uuid4().hex[:14]}", price=price)],
        metadata=kwargs.get("metadata", {}),
        cancel_at_period_end=kwargs.get("cancel_at_period_end", False),
        canceled_at=kwargs.get("canceled_at"),
        current_period_start=kwargs.get("current_period_start", now),
        current_period_end=kwargs.get("current_period_end", now + timedelta(days=30)),
        start_date=kwargs.get("start_date", now),
        customer_email=kwargs.get("customer_email"),
        customer_name=kwargs.get("customer_name"),
    )


def checkout_session_factory(**kwargs: Any) -> CheckoutSession:
    """Create a test CheckoutSession."""
    session_id = kwargs.get("id", f"cs_{uuid.uuid4().hex[:24]}")
    return CheckoutSession(
        id=session_id,
        url=kwargs.get("url", f"https://checkout.stripe.com/c/pay/{session_id}"),
        customer_id=kwargs.get("customer_id"),
        subscription_id=kwargs.get("subscription_id"),
        success_url=kwargs.get("success_url"),
        cancel_url=kwargs.get("cancel_url"),
        client_reference_id=kwargs.get("client_reference_id"),
        metadata=kwargs.get("metadata", {}),
        status=kwargs.get("status", "open"),
        payment_status=kwargs.get("payment_status", "unpaid"),
    )


def invoice_factory(**kwargs: Any) -> Invoice:
    """Create a test Invoice."""
    return Invoice(
        id=kwargs.get("id", f"in_{uuid.uuid4().hex[:14]}"),
        total=kwargs.get("total", 2500),
        status=kwargs.get("status", "paid"),
        created=kwargs.get("created", _utcnow()),
        customer_id=kwargs.get("customer_id"),
    )


def _paginate(items: list[Any], limit: int, starting_after: str | None) -> Page[Any]:
    start = 0
    if starting_after:
        ids = [item.id for item in items]
        start = ids.index(starting_after) + 1 if starting_after in ids else len(items)
    window = items[start:start + limit]
    return Page(data=window, has_more=start + limit < len(items))


class MockStripeClient(StripeClientInterface):
    """Mock Stripe client for testing.

    Stores data in memory and simulates Stripe API behavior. Every call is
    recorded in ``calls`` as ``(operation, *args)``.

    Example:
        mock_client = MockStripeClient()
        customer = mock_client.add_customer(customer_factory(metadata={"user_id": "u1"}))
        mock_client.add_subscription(subscription_factory(customer_id=customer.id))

        # Persistent failure for one operation
        mock_client.fail_on("list_invoices", StripeInvoiceError("down", http_status=503))
    """

    def __init__(self) -> None:
        """Initialize the mock client."""
        self._customers: dict[str, Customer] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._checkout_sessions: dict[str, CheckoutSession] = {}
        self._session_prices: dict[str, str] = {}
        self._session_subscription_metadata: dict[str, dict[str, str]] = {}
        self._invoices: dict[str, Invoice] = {}
        self._idempotent_results: dict[str, Any] = {}
        self.portal_sessions: list[dict[str, str]] = []
        self.calls: list[tuple[Any, ...]] = []

        # Control flags for testing error scenarios
        self._should_fail = False
        self._fail_message = "Mock failure"
        self._failures: dict[str, Exception] = {}
        self._is_healthy = True

    # Control methods for testing

    def set_should_fail(self, should_fail: bool, message: str = "Mock failure") -> None:
        """Configure the mock to fail on next operation."""
        self._should_fail = should_fail
        self._fail_message = message

    def fail_on(self, operation: str, error: Exception) -> None:
        """Raise ``error`` every time ``operation`` is called."""
        self._failures[operation] = error

    def clear_failures(self) -> None:
        self._failures.clear()
        self._should_fail = False

    def set_healthy(self, healthy: bool) -> None:
        """Set health check result."""
        self._is_healthy = healthy

    def add_customer(self, customer: Customer) -> Customer:
        """Add a customer to the mock store."""
        self._customers[customer.id] = customer
        return customer

    def add_subscription(self, subscription: Subscription) -> Subscription:
        """Add a subscription to the mock store."""
        self._subscriptions[subscription.id] = subscription
        return subscription

    def add_checkout_session(self, session: CheckoutSession) -> CheckoutSession:
        """Add a checkout session to the mock store."""
        self._checkout_sessions[session.id] = session
        return session

    def add_invoice(self, invoice: Invoice) -> Invoice:
        """Add an invoice to the mock store."""
        self._invoices[invoice.id] = invoice
        return invoice

    def clear(self) -> None:
        """Clear all stored data."""
        self._customers.clear()
        self._subscriptions.clear()
        self._checkout_sessions.clear()
        self._session_prices.clear()
        self._session_subscription_metadata.clear()
        self._invoices.clear()
        self._idempotent_results.clear()
        self.portal_sessions.clear()
        self.calls.clear()

    @property
    def customers(self) -> list[Customer]:
        return list(self._customers.values())

    def count_calls(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _record(
        self, operation: str, exception_class: type[Exception], *args: Any
    ) -> None:
        """Record the call, then raise if a failure is configured."""
        self.calls.append((operation, *args))
        if operation in self._failures:
            raise self._failures[operation]
        if self._should_fail:
            self._should_fail = False  # Reset after one failure
            raise exception_class(self._fail_message)

    # Customer operations

    async def search_customers(self, query: str, limit: int = 10) -> list[Customer]:
        """Search customers. Supports single ``metadata['k']:'v'`` or ``email:'v'`` clauses."""
        self._record("search_customers", StripeCustomerError, query)

        metadata_match = _METADATA_QUERY_RE.match(query)
        email_match = _EMAIL_QUERY_RE.match(query)
        if metadata_match:
            key, value = metadata_match.group("key"), metadata_match.group("value")
            found = [c for c in self._customers.values() if c.metadata.get(key) == value]
        elif email_match:
            value = email_match.group("value").lower()
            found = [c for c in self._customers.values() if (c.email or "").lower() == value]
        else:
            raise StripeCustomerError(
                f"Unsupported search query: {query}", details={"query": query}, http_status=400
            )
        return list(reversed(found))[:limit]

    async def list_customers(
        self, email: str | None = None, limit: int = 100
    ) -> list[Customer]:
        """List customers. The email filter is an exact, case-sensitive match."""
        self._record("list_customers", StripeCustomerError, email)

        customers = list(reversed(self._customers.values()))
        if email:
            customers = [c for c in customers if c.email == email]
        return customers[:limit]

    async def create_customer(
        self,
        email: str | None,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Customer:
        """Create a mock customer."""
        self._record("create_customer", StripeCustomerError, email)

        if idempotency_key and idempotency_key in self._idempotent_results:
            return self._idempotent_results[idempotency_key]

        customer = customer_factory(
            email=email,
            name=name,
            metadata=dict(metadata or {}),
        )
        self._customers[customer.id] = customer
        if idempotency_key:
            self._idempotent_results[idempotency_key] = customer
        return customer

    async def get_customer(self, customer_id: str) -> Customer | None:
        """Get a customer by ID."""
        self._record("get_customer", StripeCustomerError, customer_id)
        return self._customers.get(customer_id)

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Customer:
        """Update a customer. Metadata keys are merged, as Stripe does."""
        self._record("update_customer", StripeCustomerError, customer_id)

        customer = self._customers.get(customer_id)
        if not customer:
            raise StripeCustomerError(
                f"Customer not found: {customer_id}",
                details={"customer_id": customer_id},
                http_status=404,
            )
        if email is not None:
            customer.email = email
        if metadata is not None:
            customer.metadata = {**customer.metadata, **metadata}
        return customer

    # Subscription operations

    async def list_subscriptions(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        starting_after: str | None = None,
        expand_customer: bool = False,
    ) -> Page[Subscription]:
        """List subscriptions, newest first.

        Without a status Stripe omits canceled subscriptions; ``"all"``
        includes every status.
        """
        self._record("list_subscriptions", StripeSubscriptionError, customer_id, status)

        subs = list(reversed(self._subscriptions.values()))
        if customer_id:
            subs = [s for s in subs if s.customer_id == customer_id]
        if status is None:
            subs = [s for s in subs if s.status != SubscriptionStatus.CANCELED]
        elif status != "all":
            subs = [s for s in subs if s.status.value == status]

        if expand_customer:
            for sub in subs:
                customer = self._customers.get(sub.customer_id or "")
                if customer:
                    sub.customer_email = customer.email
                    sub.customer_name = customer.name

        return _paginate(subs, limit, starting_after)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID."""
        self._record("get_subscription", StripeSubscriptionError, subscription_id)
        return self._subscriptions.get(subscription_id)

    async def update_subscription(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> Subscription:
        """Merge metadata into a subscription."""
        self._record("update_subscription", StripeSubscriptionError, subscription_id)

        subscription = self._subscriptions.get(subscription_id)
        if not subscription:
            raise StripeSubscriptionError(
                f"Subscription not found: {subscription_id}",
                details={"subscription_id": subscription_id},
                http_status=404,
            )
        subscription.metadata = {**subscription.metadata, **metadata}
        return subscription

    async def cancel_subscription(self, subscription_id: str) -> Subscription:
        """Cancel a subscription immediately."""
        self._record("cancel_subscription", StripeSubscriptionError, subscription_id)

        subscription = self._subscriptions.get(subscription_id)
        if not subscription:
            raise StripeSubscriptionError(
                f"Subscription not found: {subscription_id}",
                details={"subscription_id": subscription_id},
                http_status=404,
            )
        if subscription.status == SubscriptionStatus.CANCELED:
            raise StripeSubscriptionError(
                f"Subscription already canceled: {subscription_id}",
                details={"subscription_id": subscription_id},
                http_status=400,
            )

        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = _utcnow()
        subscription.cancel_at_period_end = False
        return subscription

    # Checkout operations

    async def create_checkout_session(
        self,
        price_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str | None = None,
        metadata: dict[str, str] | None = None,
        subscription_metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> CheckoutSession:
        """Create a mock checkout session."""
        self._record("create_checkout_session", StripePaymentError, price_id, customer_id)

        if idempotency_key and idempotency_key in self._idempotent_results:
            return self._idempotent_results[idempotency_key]

        session = checkout_session_factory(
            customer_id=customer_id,
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=client_reference_id,
            metadata=dict(metadata or {}),
        )
        self._checkout_sessions[session.id] = session
        self._session_prices[session.id] = price_id
        self._session_subscription_metadata[session.id] = dict(subscription_metadata or {})
        if idempotency_key:
            self._idempotent_results[idempotency_key] = session
        return session

    async def get_checkout_session(self, session_id: str) -> CheckoutSession | None:
        """Get a checkout session by ID."""
        self._record("get_checkout_session", StripePaymentError, session_id)
        return self._checkout_sessions.get(session_id)

    # Billing portal

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> str:
        """Create a mock billing portal session."""
        self._record("create_billing_portal_session", StripePaymentError, customer_id)

        if customer_id not in self._customers:
            raise StripeCustomerError(
                f"Customer not found: {customer_id}",
                details={"customer_id": customer_id},
                http_status=404,
            )

        session_id = f"bps_{uuid.uuid4().hex[:24]}"
        self.portal_sessions.append(
            {"id": session_id, "customer_id": customer_id, "return_url": return_url}
        )
        return f"https://billing.stripe.com/p/session/{session_id}"

    # Invoice operations

    async def list_invoices(
        self,
        status: str | None = None,
        created_gte: int | None = None,
        created_lte: int | None = None,
        limit: int = 100,
        starting_after: str | None = None,
    ) -> Page[Invoice]:
        """List invoices, newest first."""
        self._record("list_invoices", StripeInvoiceError, status, created_gte, created_lte)

        invoices = sorted(self._invoices.values(), key=lambda inv: inv.created, reverse=True)
        if status:
            invoices = [inv for inv in invoices if inv.status == status]
        if created_gte is not None:
            invoices = [inv for inv in invoices if to_unix(inv.created) >= created_gte]
        if created_lte is not None:
            invoices = [inv for inv in invoices if to_unix(inv.created) <= created_lte]
        return _paginate(invoices, limit, starting_after)

    # Health check

    async def health_check(self) -> bool:
        """Return configured health status."""
        return self._is_healthy

    # Simulation helpers

    def simulate_checkout_complete(
        self, session_id: str, unit_amount: int = 2500
    ) -> Subscription:
        """Simulate a checkout completion.

        Creates the subscription the session paid for and attaches it to the
        session. Returns the created subscription.
        """
        session = self._checkout_sessions.get(session_id)
        if not session:
            raise ValueError(f"Checkout session not found: {session_id}")

        subscription = subscription_factory(
            customer_id=session.customer_id,
            price_id=self._session_prices.get(session_id, ""),
            unit_amount=unit_amount,
            metadata=dict(self._session_subscription_metadata.get(session_id, {})),
        )
        self._subscriptions[subscription.id] = subscription

        session.status = "complete"
        session.payment_status = "paid"
        session.subscription_id = subscription.id

        return subscription
