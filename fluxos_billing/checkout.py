"""
Checkout orchestration.

Sends existing paid subscribers to the billing portal and everyone else
(new or free-tier users) to a new Checkout session. Redirect URLs are always
rebuilt on a trusted frontend origin, and session creation is idempotent.
"""

import time
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlsplit

import structlog

from .client import StripeClientInterface
from .config import DEFAULT_FRONTEND_ORIGIN, BillingConfig
from .customers import CustomerResolver
from .exceptions import BillingValidationError
from .idempotency import idempotency_key
from .models import Subscription, SubscriptionStatus
from .outcomes import BestEffortOutcome
from .pagination import fetch_all
from .tiers import TierClassifier

logger = structlog.get_logger(__name__)

DEFAULT_SUCCESS_PATH = "/subscription-success?session_id={CHECKOUT_SESSION_ID}"
DEFAULT_CANCEL_PATH = "/plans?status=cancelled"
DEFAULT_PORTAL_RETURN_PATH = "/plans"

# Identical checkout requests inside one window share a session
IDEMPOTENCY_WINDOW_SECONDS = 600

PORTAL_MESSAGE = "Existing subscription found, redirecting to Billing Portal"
CHECKOUT_MESSAGE = "Checkout session created"


def origin_of(url: str | None) -> str | None:
    """Return ``scheme://host[:port]`` of an absolute http(s) URL, else None."""
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    if "@" in parts.netloc:
        return None
    origin = f"{parts.scheme}://{parts.hostname}"
    return f"{origin}:{port}" if port else origin


def normalize_redirect(url: str | None, origin: str, default_path: str) -> str:
    """Rebuild ``url`` on ``origin``, keeping only its path, query and fragment.

    Missing or unparseable URLs, and non-http(s) schemes, fall back to
    ``default_path``.
    """
    if not url or not url.strip():
        return f"{origin}{default_path}"
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return f"{origin}{default_path}"
    if parts.scheme and parts.scheme not in ("http", "https"):
        return f"{origin}{default_path}"

    path = parts.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    normalized = f"{origin}{path}"
    if parts.query:
        normalized += f"?{parts.query}"
    if parts.fragment:
        normalized += f"#{parts.fragment}"
    return normalized


@dataclass
class CheckoutResult:
    """Where to send the user next."""

    url: str
    customer_id: str
    effective_success_url: str
    effective_cancel_url: str
    session_id: str | None = None
    portal: bool = False
    existing_subscription_id: str | None = None
    outcomes: list[BestEffortOutcome] = field(default_factory=list)

    @property
    def message(self) -> str:
        return PORTAL_MESSAGE if self.portal else CHECKOUT_MESSAGE


class CheckoutOrchestrator:
    """Chooses between the billing portal and a new Checkout session."""

    def __init__(
        self,
        client: StripeClientInterface,
        config: BillingConfig,
        resolver: CustomerResolver | None = None,
        classifier: TierClassifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.config = config
        self.resolver = resolver or CustomerResolver(client)
        self.classifier = classifier or TierClassifier(config)
        self.clock = clock

    def resolve_origin(self, success_url: str | None, request_origin: str | None = None) -> str:
        """Pick the only origin redirect URLs may point at.

        Order: the success URL's origin (if allowed), the configured frontend
        origin, the request's Origin header (if allowed), localhost:3000.
        """
        candidate = origin_of(success_url)
        if candidate and self.config.is_allowed_origin(candidate):
            return candidate
        if self.config.frontend_origin:
            return self.config.frontend_origin
        candidate = origin_of(request_origin)
        if candidate and self.config.is_allowed_origin(candidate):
            return candidate
        return DEFAULT_FRONTEND_ORIGIN

    async def _customer_subscriptions(self, customer_id: str) -> list[Subscription]:
        """Every subscription of the customer, canceled ones included."""
        return await fetch_all(
            lambda cursor: self.client.list_subscriptions(
                customer_id=customer_id,
                status="all",
                starting_after=cursor,
            )
        )

    def _find_blocking_subscription(self, subscriptions: list[Subscription]) -> Subscription | None:
        """Return a paid active (then trialing) subscription, if there is one."""
        for status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            for subscription in subscriptions:
                if subscription.status == status and self.classifier.blocks_checkout(subscription):
                    return subscription
        return None

    async def create_or_redirect(
        self,
        price_id: str | None,
        user_id: str | None,
        email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        request_origin: str | None = None,
    ) -> CheckoutResult:
        """
        Start a checkout for ``price_id``, or redirect a paid subscriber to the portal.

        Args:
            price_id: Stripe price to subscribe to
            user_id: Application user ID
            email: Email of the authenticated session
            success_url: Requested success redirect (host is not trusted)
            cancel_url: Requested cancel redirect (host is not trusted)
            request_origin: Origin header of the incoming request

        Returns:
            CheckoutResult with the portal or Checkout URL

        Raises:
            BillingValidationError: If price_id or user_id is missing
            StripeError: If Stripe rejects the session or portal request
        """
        if not price_id or not user_id:
            raise BillingValidationError(
                "Price ID and User ID are required",
                details={
                    "missing": [
                        name
                        for name, value in (("price_id", price_id), ("user_id", user_id))
                        if not value
                    ]
                },
            )

        origin = self.resolve_origin(success_url, request_origin)
        effective_success_url = normalize_redirect(success_url, origin, DEFAULT_SUCCESS_PATH)
        effective_cancel_url = normalize_redirect(cancel_url, origin, DEFAULT_CANCEL_PATH)

        resolved = await self.resolver.resolve(user_id, email)
        customer_id = resolved.id

        subscriptions = await self._customer_subscriptions(customer_id)
        existing = self._find_blocking_subscription(subscriptions)
        if existing is not None:
            return_url = normalize_redirect(success_url, origin, DEFAULT_PORTAL_RETURN_PATH)
            portal_url = await self.client.create_billing_portal_session(
                customer_id=customer_id,
                return_url=return_url,
            )
            logger.info(
                "checkout_redirected_to_portal",
                user_id=user_id,
                customer_id=customer_id,
                subscription_id=existing.id,
                requested_price_id=price_id,
            )
            return CheckoutResult(
                url=portal_url,
                customer_id=customer_id,
                effective_success_url=effective_success_url,
                effective_cancel_url=effective_cancel_url,
                portal=True,
                existing_subscription_id=existing.id,
                outcomes=resolved.outcomes,
            )

        key = idempotency_key(
            "checkout",
            user_id=user_id,
            price_id=price_id,
            success_url=effective_success_url,
            cancel_url=effective_cancel_url,
            customer_id=customer_id,
            # Completed checkouts and the time window both change the key
            subscriptions=sorted(subscription.id for subscription in subscriptions),
            window=int(self.clock() // IDEMPOTENCY_WINDOW_SECONDS),
        )
        session = await self.client.create_checkout_session(
            price_id=price_id,
            customer_id=customer_id,
            success_url=effective_success_url,
            cancel_url=effective_cancel_url,
            client_reference_id=user_id,
            metadata={"user_id": user_id},
            subscription_metadata={"user_id": user_id},
            idempotency_key=key,
        )

        logger.info(
            "checkout_started",
            user_id=user_id,
            customer_id=customer_id,
            session_id=session.id,
            price_id=price_id,
            origin=origin,
        )
        return CheckoutResult(
            url=session.url,
            customer_id=customer_id,
            effective_success_url=effective_success_url,
            effective_cancel_url=effective_cancel_url,
            session_id=session.id,
            outcomes=resolved.outcomes,
        )
