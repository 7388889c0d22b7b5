"""
Customer resolution.

Finds or creates the single Stripe customer backing an application user and
keeps its email and ``metadata.user_id`` aligned with the authenticated
session.
"""

from dataclasses import dataclass, field

import structlog

from .client import StripeClientInterface
from .exceptions import BillingValidationError, StripeConnectionError, StripeError
from .idempotency import idempotency_key
from .models import Customer
from .outcomes import BestEffortOutcome

logger = structlog.get_logger(__name__)


def _quote(value: str) -> str:
    """Quote a value for Stripe's search query language."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


@dataclass
class ResolvedCustomer:
    customer: Customer
    created: bool = False
    outcomes: list[BestEffortOutcome] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.customer.id


class CustomerResolver:
    """
    Resolves the Stripe customer for an application user.

    Lookup order is ``metadata.user_id``, then email (search, falling back to
    listing since search results lag behind writes), then creation. A user
    never gets a second customer: duplicates are logged and the first match
    is used.
    """

    def __init__(self, client: StripeClientInterface):
        self.client = client

    async def resolve(self, user_id: str, email: str | None = None) -> ResolvedCustomer:
        """
        Find or create the customer for ``user_id``.

        Args:
            user_id: Application user ID
            email: Email of the authenticated session, if known

        Returns:
            ResolvedCustomer with the customer and any metadata-sync outcomes

        Raises:
            BillingValidationError: If user_id is empty
            StripeConnectionError: If Stripe is unreachable (retryable)
        """
        if not user_id:
            raise BillingValidationError("User ID is required", details={"field": "user_id"})
        email = (email or "").strip() or None

        customer = await self._find_by_user_id(user_id)
        if customer is None and email:
            customer = await self._find_by_email(email)

        if customer is None:
            customer = await self._create(user_id, email)
            return ResolvedCustomer(customer=customer, created=True)

        outcomes = await self._reconcile(customer, user_id, email)
        return ResolvedCustomer(customer=customer, outcomes=outcomes)

    async def _search(self, query: str) -> list[Customer] | None:
        """Run a search; None means search is unavailable and the caller should fall back."""
        try:
            return await self.client.search_customers(query)
        except StripeConnectionError:
            raise
        except StripeError as e:
            logger.warning("customer_search_unavailable", query=query, error=str(e))
            return None

    def _pick(self, candidates: list[Customer], **context: str) -> Customer | None:
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.warning(
                "duplicate_customers_found",
                customer_ids=[c.id for c in candidates],
                **context,
            )
        return candidates[0]

    async def _find_by_user_id(self, user_id: str) -> Customer | None:
        candidates = await self._search(f"metadata['user_id']:{_quote(user_id)}")
        return self._pick(candidates or [], user_id=user_id)

    async def _find_by_email(self, email: str) -> Customer | None:
        candidates = await self._search(f"email:{_quote(email)}")
        if candidates:
            return self._pick(candidates, email=email)

        # Listing filters on the exact stored email, so match case-insensitively here
        wanted = email.lower()
        listed = await self.client.list_customers(email=email)
        if not listed and email != wanted:
            listed = await self.client.list_customers(email=wanted)
        matches = [c for c in listed if (c.email or "").lower() == wanted]
        return self._pick(matches, email=email)

    async def _create(self, user_id: str, email: str | None) -> Customer:
        customer = await self.client.create_customer(
            email=email,
            metadata={"user_id": user_id},
            idempotency_key=idempotency_key("customer", user_id=user_id, email=email),
        )
        logger.info(
            "customer_created_for_user",
            customer_id=customer.id,
            user_id=user_id,
            anonymous=email is None,
        )
        return customer

    async def _reconcile(
        self, customer: Customer, user_id: str, email: str | None
    ) -> list[BestEffortOutcome]:
        """Align email and user_id metadata. Failures are reported, never raised."""
        new_email = email if email and customer.email != email else None
        new_metadata = {"user_id": user_id} if customer.user_id != user_id else None
        if new_email is None and new_metadata is None:
            return []

        try:
            updated = await self.client.update_customer(
                customer.id, email=new_email, metadata=new_metadata
            )
        except StripeError as e:
            logger.warning(
                "customer_metadata_sync_failed",
                customer_id=customer.id,
                user_id=user_id,
                error=str(e),
            )
            return [BestEffortOutcome.failed("sync_customer", customer.id, e)]

        customer.email = updated.email
        customer.metadata = updated.metadata
        logger.info(
            "customer_metadata_synced",
            customer_id=customer.id,
            email_updated=new_email is not None,
            user_id_updated=new_metadata is not None,
        )
        return [BestEffortOutcome(action="sync_customer", target=customer.id)]
