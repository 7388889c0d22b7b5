"""
Stripe client implementation.

Concrete implementation using the official Stripe API. Covers exactly the
remote surface the billing core needs: customers, subscriptions, checkout
sessions, billing portal sessions and invoices.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import stripe
import structlog

from .config import StripeConfig
from .exceptions import (
    StripeConnectionError,
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
    from_unix,
)

logger = structlog.get_logger(__name__)


class StripeClientInterface(ABC):
    """Abstract interface for Stripe operations."""

    # Customer operations
    @abstractmethod
    async def search_customers(self, query: str, limit: int = 10) -> list[Customer]:
        """Search customers with Stripe's search query language."""
        ...

    @abstractmethod
    async def list_customers(
        self, email: str | None = None, limit: int = 100
    ) -> list[Customer]:
        """List customers, optionally filtered by exact email."""
        ...

    @abstractmethod
    async def create_customer(
        self,
        email: str | None,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Customer:
        """Create a new Stripe customer."""
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer | None:
        """Get a customer by ID."""
        ...

    @abstractmethod
    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Customer:
        """Update a customer's email and/or metadata."""
        ...

    # Subscription operations
    @abstractmethod
    async def list_subscriptions(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        starting_after: str | None = None,
        expand_customer: bool = False,
    ) -> Page[Subscription]:
        """List one page of subscriptions."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID."""
        ...

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> Subscription:
        """Replace subscription metadata keys."""
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> Subscription:
        """Cancel a subscription immediately."""
        ...

    # Checkout operations
    @abstractmethod
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
        """Create a subscription-mode Stripe Checkout session."""
        ...

    @abstractmethod
    async def get_checkout_session(self, session_id: str) -> CheckoutSession | None:
        """Get a checkout session by ID."""
        ...

    # Billing portal
    @abstractmethod
    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> str:
        """Create a billing portal session. Returns the portal URL."""
        ...

    # Invoice operations
    @abstractmethod
    async def list_invoices(
        self,
        status: str | None = None,
        created_gte: int | None = None,
        created_lte: int | None = None,
        limit: int = 100,
        starting_after: str | None = None,
    ) -> Page[Invoice]:
        """List one page of invoices."""
        ...

    # Health check
    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the Stripe API is accessible."""
        ...


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _object_id(value: Any) -> str | None:
    """Stripe references are either an ID string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _is_not_found(error: Exception) -> bool:
    return getattr(error, "http_status", None) == 404


class StripeClient(StripeClientInterface):
    """Concrete Stripe client implementation."""

    def __init__(self, config: StripeConfig):
        """Initialize the Stripe client.

        Args:
            config: StripeConfig instance with API credentials
        """
        self.config = config
        stripe.api_key = config.api_key
        stripe.max_network_retries = config.max_retries

        logger.info(
            "stripe_client_initialized",
            is_test_mode=config.is_test_mode,
            timeout=config.timeout,
        )

    def _convert_stripe_customer(self, stripe_customer: Any) -> Customer:
        """Convert Stripe customer object to Customer model."""
        return Customer(
            id=_field(stripe_customer, "id"),
            email=_field(stripe_customer, "email"),
            name=_field(stripe_customer, "name"),
            metadata=dict(_field(stripe_customer, "metadata", {})),
            created_at=from_unix(_field(stripe_customer, "created")),
        )

    def _convert_stripe_price(self, stripe_price: Any) -> Price:
        """Convert Stripe price object to Price model."""
        recurring = _field(stripe_price, "recurring")
        return Price(
            id=_field(stripe_price, "id", ""),
            product_id=_object_id(_field(stripe_price, "product")),
            unit_amount=_field(stripe_price, "unit_amount"),
            currency=_field(stripe_price, "currency", "usd"),
            recurring_interval=_field(recurring, "interval"),
        )

    def _convert_stripe_subscription(self, stripe_sub: Any) -> Subscription:
        """Convert Stripe subscription object to Subscription model."""
        item_objects = list(_field(_field(stripe_sub, "items"), "data", []))
        items = [
            SubscriptionItem(
                id=_field(item, "id", ""),
                price=self._convert_stripe_price(_field(item, "price")),
            )
            for item in item_objects
        ]

        # Newer API versions report the billing period on the items
        first_item = item_objects[0] if item_objects else None
        period_start = _field(stripe_sub, "current_period_start") or _field(
            first_item, "current_period_start"
        )
        period_end = _field(stripe_sub, "current_period_end") or _field(
            first_item, "current_period_end"
        )

        customer = _field(stripe_sub, "customer")
        expanded = customer if customer is not None and not isinstance(customer, str) else None

        return Subscription(
            id=_field(stripe_sub, "id"),
            customer_id=_object_id(customer),
            status=SubscriptionStatus(_field(stripe_sub, "status", "active")),
            items=items,
            metadata=dict(_field(stripe_sub, "metadata", {})),
            cancel_at_period_end=bool(_field(stripe_sub, "cancel_at_period_end", False)),
            canceled_at=from_unix(_field(stripe_sub, "canceled_at")),
            current_period_start=from_unix(period_start),
            current_period_end=from_unix(period_end),
            start_date=from_unix(_field(stripe_sub, "start_date")),
            customer_email=_field(expanded, "email"),
            customer_name=_field(expanded, "name"),
        )

    def _convert_stripe_checkout_session(self, stripe_session: Any) -> CheckoutSession:
        """Convert Stripe checkout session to CheckoutSession model."""
        return CheckoutSession(
            id=_field(stripe_session, "id"),
            url=_field(stripe_session, "url", ""),
            customer_id=_object_id(_field(stripe_session, "customer")),
            subscription_id=_object_id(_field(stripe_session, "subscription")),
            success_url=_field(stripe_session, "success_url"),
            cancel_url=_field(stripe_session, "cancel_url"),
            client_reference_id=_field(stripe_session, "client_reference_id"),
            metadata=dict(_field(stripe_session, "metadata", {})),
            status=_field(stripe_session, "status"),
            payment_status=_field(stripe_session, "payment_status"),
        )

    def _convert_stripe_invoice(self, stripe_invoice: Any) -> Invoice:
        """Convert Stripe invoice object to Invoice model."""
        return Invoice(
            id=_field(stripe_invoice, "id"),
            total=_field(stripe_invoice, "total", 0),
            status=_field(stripe_invoice, "status", ""),
            created=from_unix(_field(stripe_invoice, "created", 0)),
            customer_id=_object_id(_field(stripe_invoice, "customer")),
        )

    async def _run_in_executor(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous Stripe API call in an executor, bounded by the timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: func(*args, **kwargs)),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("stripe_call_timed_out", timeout=self.config.timeout)
            raise StripeConnectionError(
                f"Stripe API call timed out after {self.config.timeout}s",
                original_error=e,
            )
        except stripe.APIConnectionError as e:
            logger.error("stripe_connection_failed", error=str(e))
            raise StripeConnectionError(
                f"Unable to reach Stripe: {str(e)}",
                original_error=e,
            )

    # Customer operations

    async def search_customers(self, query: str, limit: int = 10) -> list[Customer]:
        """Search customers with Stripe's search query language."""
        try:
            logger.debug("searching_stripe_customers", query=query)

            result = await self._run_in_executor(
                stripe.Customer.search, query=query, limit=limit
            )

            return [self._convert_stripe_customer(c) for c in _field(result, "data", [])]

        except stripe.StripeError as e:
            logger.error("stripe_customer_search_failed", query=query, error=str(e))
            raise StripeCustomerError(
                f"Failed to search Stripe customers: {str(e)}",
                details={"query": query},
                original_error=e,
            )

    async def list_customers(
        self, email: str | None = None, limit: int = 100
    ) -> list[Customer]:
        """List customers, optionally filtered by exact email."""
        try:
            logger.debug("listing_stripe_customers", email=email)

            params: dict[str, Any] = {"limit": limit}
            if email:
                params["email"] = email

            result = await self._run_in_executor(stripe.Customer.list, **params)

            return [self._convert_stripe_customer(c) for c in _field(result, "data", [])]

        except stripe.StripeError as e:
            logger.error("stripe_customer_list_failed", email=email, error=str(e))
            raise StripeCustomerError(
                f"Failed to list Stripe customers: {str(e)}",
                details={"email": email},
                original_error=e,
            )

    async def create_customer(
        self,
        email: str | None,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Customer:
        """Create a new Stripe customer."""
        try:
            logger.info("creating_stripe_customer", email=email, name=name)

            customer_data: dict[str, Any] = {"metadata": metadata or {}}
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name
            if idempotency_key:
                customer_data["idempotency_key"] = idempotency_key

            stripe_customer = await self._run_in_executor(
                stripe.Customer.create, **customer_data
            )

            customer = self._convert_stripe_customer(stripe_customer)
            logger.info("stripe_customer_created", customer_id=customer.id, email=email)
            return customer

        except stripe.StripeError as e:
            logger.error("stripe_customer_create_failed", email=email, error=str(e))
            raise StripeCustomerError(
                f"Failed to create Stripe customer: {str(e)}",
                details={"email": email},
                original_error=e,
            )

    async def get_customer(self, customer_id: str) -> Customer | None:
        """Get a customer by ID. Deleted customers are reported as missing."""
        try:
            logger.debug("fetching_stripe_customer", customer_id=customer_id)

            stripe_customer = await self._run_in_executor(
                stripe.Customer.retrieve, customer_id
            )

            if _field(stripe_customer, "deleted", False):
                return None

            return self._convert_stripe_customer(stripe_customer)

        except stripe.InvalidRequestError as e:
            if not _is_not_found(e):
                raise StripeCustomerError(
                    f"Failed to fetch Stripe customer: {str(e)}",
                    details={"customer_id": customer_id},
                    original_error=e,
                )
            logger.warning("stripe_customer_not_found", customer_id=customer_id)
            return None
        except stripe.StripeError as e:
            logger.error(
                "stripe_customer_fetch_failed", customer_id=customer_id, error=str(e)
            )
            raise StripeCustomerError(
                f"Failed to fetch Stripe customer: {str(e)}",
                details={"customer_id": customer_id},
                original_error=e,
            )

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Customer:
        """Update a customer's email and/or metadata."""
        try:
            logger.info(
                "updating_stripe_customer",
                customer_id=customer_id,
                email_changed=email is not None,
                metadata_keys=sorted(metadata or {}),
            )

            params: dict[str, Any] = {}
            if email is not None:
                params["email"] = email
            if metadata is not None:
                params["metadata"] = metadata

            stripe_customer = await self._run_in_executor(
                stripe.Customer.modify, customer_id, **params
            )

            return self._convert_stripe_customer(stripe_customer)

        except stripe.StripeError as e:
            logger.error(
                "stripe_customer_update_failed", customer_id=customer_id, error=str(e)
            )
            raise StripeCustomerError(
                f"Failed to update Stripe customer: {str(e)}",
                details={"customer_id": customer_id},
                original_error=e,
            )

    # Subscription operations

    async def list_subscriptions(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        starting_after: str | None = None,
        expand_customer: bool = False,
    ) -> Page[Subscription]:
        """List one page of subscriptions."""
        try:
            logger.debug(
                "listing_subscriptions",
                customer_id=customer_id,
                status=status,
                starting_after=starting_after,
            )

            params: dict[str, Any] = {"limit": limit}
            if customer_id:
                params["customer"] = customer_id
            if status:
                params["status"] = status
            if starting_after:
                params["starting_after"] = starting_after
            if expand_customer:
                params["expand"] = ["data.customer"]

            result = await self._run_in_executor(stripe.Subscription.list, **params)

            return Page(
                data=[
                    self._convert_stripe_subscription(sub)
                    for sub in _field(result, "data", [])
                ],
                has_more=bool(_field(result, "has_more", False)),
            )

        except stripe.StripeError as e:
            logger.error(
                "list_subscriptions_failed",
                customer_id=customer_id,
                status=status,
                error=str(e),
            )
            raise StripeSubscriptionError(
                f"Failed to list subscriptions: {str(e)}",
                details={"customer_id": customer_id, "status": status},
                original_error=e,
            )

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID."""
        try:
            logger.debug("fetching_subscription", subscription_id=subscription_id)

            stripe_sub = await self._run_in_executor(
                stripe.Subscription.retrieve, subscription_id
            )

            return self._convert_stripe_subscription(stripe_sub)

        except stripe.InvalidRequestError as e:
            if not _is_not_found(e):
                raise StripeSubscriptionError(
                    f"Failed to fetch subscription: {str(e)}",
                    details={"subscription_id": subscription_id},
                    original_error=e,
                )
            logger.warning("subscription_not_found", subscription_id=subscription_id)
            return None
        except stripe.StripeError as e:
            logger.error(
                "subscription_fetch_failed", subscription_id=subscription_id, error=str(e)
            )
            raise StripeSubscriptionError(
                f"Failed to fetch subscription: {str(e)}",
                details={"subscription_id": subscription_id},
                original_error=e,
            )

    async def update_subscription(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> Subscription:
        """Replace subscription metadata keys."""
        try:
            logger.info(
                "updating_subscription_metadata",
                subscription_id=subscription_id,
                metadata_keys=sorted(metadata),
            )

            stripe_sub = await self._run_in_executor(
                stripe.Subscription.modify, subscription_id, metadata=metadata
            )

            return self._convert_stripe_subscription(stripe_sub)

        except stripe.StripeError as e:
            logger.error(
                "subscription_update_failed", subscription_id=subscription_id, error=str(e)
            )
            raise StripeSubscriptionError(
                f"Failed to update subscription: {str(e)}",
                details={"subscription_id": subscription_id},
                original_error=e,
            )

    async def cancel_subscription(self, subscription_id: str) -> Subscription:
        """Cancel a subscription immediately."""
        try:
            logger.info("canceling_subscription", subscription_id=subscription_id)

            stripe_sub = await self._run_in_executor(
                stripe.Subscription.cancel, subscription_id
            )

            subscription = self._convert_stripe_subscription(stripe_sub)
            logger.info("subscription_canceled", subscription_id=subscription_id)
            return subscription

        except stripe.StripeError as e:
            logger.error(
                "subscription_cancel_failed", subscription_id=subscription_id, error=str(e)
            )
            raise StripeSubscriptionError(
                f"Failed to cancel subscription: {str(e)}",
                details={"subscription_id": subscription_id},
                original_error=e,
            )

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
        """Create a subscription-mode Stripe Checkout session."""
        try:
            logger.info(
                "creating_checkout_session",
                price_id=price_id,
                customer_id=customer_id,
            )

            session_data: dict[str, Any] = {
                "mode": "subscription",
                "payment_method_types": ["card"],
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata or {},
                "subscription_data": {"metadata": subscription_metadata or {}},
            }
            if client_reference_id:
                session_data["client_reference_id"] = client_reference_id
            if idempotency_key:
                session_data["idempotency_key"] = idempotency_key

            stripe_session = await self._run_in_executor(
                stripe.checkout.Session.create, **session_data
            )

            session = self._convert_stripe_checkout_session(stripe_session)
            logger.info(
                "checkout_session_created",
                session_id=session.id,
                customer_id=customer_id,
            )
            return session

        except stripe.StripeError as e:
            logger.error("checkout_session_create_failed", price_id=price_id, error=str(e))
            raise StripePaymentError(
                f"Failed to create checkout session: {str(e)}",
                details={"price_id": price_id, "customer_id": customer_id},
                original_error=e,
            )

    async def get_checkout_session(self, session_id: str) -> CheckoutSession | None:
        """Get a checkout session by ID."""
        try:
            logger.debug("fetching_checkout_session", session_id=session_id)

            stripe_session = await self._run_in_executor(
                stripe.checkout.Session.retrieve, session_id
            )

            return self._convert_stripe_checkout_session(stripe_session)

        except stripe.InvalidRequestError as e:
            if not _is_not_found(e):
                raise StripePaymentError(
                    f"Failed to fetch checkout session: {str(e)}",
                    details={"session_id": session_id},
                    original_error=e,
                )
            logger.warning("checkout_session_not_found", session_id=session_id)
            return None
        except stripe.StripeError as e:
            logger.error(
                "checkout_session_fetch_failed", session_id=session_id, error=str(e)
            )
            raise StripePaymentError(
                f"Failed to fetch checkout session: {str(e)}",
                details={"session_id": session_id},
                original_error=e,
            )

    # Billing portal

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> str:
        """Create a billing portal session. Returns the portal URL."""
        try:
            logger.info("creating_billing_portal_session", customer_id=customer_id)

            session = await self._run_in_executor(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url,
            )

            logger.info(
                "billing_portal_session_created",
                customer_id=customer_id,
                session_id=_field(session, "id"),
            )
            return _field(session, "url")

        except stripe.StripeError as e:
            logger.error(
                "billing_portal_create_failed", customer_id=customer_id, error=str(e)
            )
            raise StripePaymentError(
                f"Failed to create billing portal session: {str(e)}",
                details={"customer_id": customer_id},
                original_error=e,
            )

    # Invoice operations

    async def list_invoices(
        self,
        status: str | None = None,
        created_gte: int | None = None,
        created_lte: int | None = None,
        limit: int = 100,
        starting_after: str | None = None,
    ) -> Page[Invoice]:
        """List one page of invoices."""
        try:
            logger.debug(
                "listing_invoices",
                status=status,
                created_gte=created_gte,
                created_lte=created_lte,
                starting_after=starting_after,
            )

            params: dict[str, Any] = {"limit": limit}
            if status:
                params["status"] = status
            created: dict[str, int] = {}
            if created_gte is not None:
                created["gte"] = created_gte
            if created_lte is not None:
                created["lte"] = created_lte
            if created:
                params["created"] = created
            if starting_after:
                params["starting_after"] = starting_after

            result = await self._run_in_executor(stripe.Invoice.list, **params)

            return Page(
                data=[self._convert_stripe_invoice(inv) for inv in _field(result, "data", [])],
                has_more=bool(_field(result, "has_more", False)),
            )

        except stripe.StripeError as e:
            logger.error("list_invoices_failed", status=status, error=str(e))
            raise StripeInvoiceError(
                f"Failed to list invoices: {str(e)}",
                details={"status": status},
                original_error=e,
            )

    # Health check

    async def health_check(self) -> bool:
        """Check if the Stripe API is accessible."""
        try:
            logger.debug("checking_stripe_health")

            await self._run_in_executor(stripe.Customer.list, limit=1)

            logger.info("stripe_health_check_passed")
            return True

        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            return False
