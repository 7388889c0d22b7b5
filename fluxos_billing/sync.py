"""
Post-checkout subscription sync.

Builds the normalized subscription record the frontend caches after the
success redirect, and the minimal status summary used for lookups.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from .client import StripeClientInterface
from .exceptions import BillingNotFoundError, BillingValidationError, StripeError
from .models import NormalizedSubscriptionRecord, Subscription, SubscriptionSummary, to_iso, to_unix
from .outcomes import BestEffortOutcome
from .refs import ResolvedRef, SubscriptionRef, resolve_subscription_id

logger = structlog.get_logger(__name__)


@dataclass
class SyncResult:
    record: NormalizedSubscriptionRecord
    outcomes: list[BestEffortOutcome] = field(default_factory=list)


class SubscriptionSyncer:
    """Reads a subscription back from Stripe after checkout."""

    def __init__(self, client: StripeClientInterface):
        self.client = client

    async def _load(self, ref: SubscriptionRef) -> tuple[ResolvedRef, Subscription]:
        resolved = await resolve_subscription_id(self.client, ref)
        subscription = await self.client.get_subscription(resolved.subscription_id)
        if subscription is None:
            raise BillingNotFoundError(
                "Subscription not found",
                details={"subscription_id": resolved.subscription_id},
            )
        return resolved, subscription

    async def sync(
        self,
        session_id: str | None = None,
        subscription_id: str | None = None,
        user_id: str | None = None,
        email: str | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        """
        Fetch a subscription and normalize it for the client.

        When both IDs are given the subscription ID is used directly.

        Args:
            session_id: Checkout session ID from the success redirect
            subscription_id: Subscription ID
            user_id: Application user ID to record on the subscription
            email: Fallback email when the customer has none
            now: Clock override for the start date fallback

        Returns:
            SyncResult with the NormalizedSubscriptionRecord

        Raises:
            BillingValidationError: If neither ID is given
            BillingNotFoundError: If the session has no subscription or the subscription is gone
        """
        if subscription_id:
            ref = SubscriptionRef.subscription(subscription_id)
        elif session_id:
            ref = SubscriptionRef.session(session_id)
        else:
            raise BillingValidationError("Provide either subscription_id or session_id")

        resolved, subscription = await self._load(ref)

        customer_id = resolved.session_customer_id or subscription.customer_id
        customer = await self.client.get_customer(customer_id) if customer_id else None
        customer_email = (customer.email if customer else None) or email or ""

        outcomes = []
        if user_id and subscription.user_id != user_id:
            outcomes.append(await self._tag_user(subscription, user_id))

        start = subscription.start_date or now or datetime.now(timezone.utc)
        start_date = to_iso(start)
        period_end = (
            to_iso(subscription.current_period_end)
            if subscription.current_period_end
            else start_date
        )

        record = NormalizedSubscriptionRecord(
            subscription_id=subscription.id,
            email=customer_email,
            plan_id=subscription.price_id,
            status=subscription.status.value,
            start_date=start_date,
            renewal_date=period_end,
            expires_at=period_end,
            auto_renew=not subscription.cancel_at_period_end,
            customer_id=customer_id,
            checkout_session_id=session_id or resolved.session_id,
        )
        logger.info(
            "subscription_synced",
            subscription_id=subscription.id,
            customer_id=customer_id,
            status=record.status,
        )
        return SyncResult(record=record, outcomes=outcomes)

    async def _tag_user(self, subscription: Subscription, user_id: str) -> BestEffortOutcome:
        try:
            await self.client.update_subscription(subscription.id, metadata={"user_id": user_id})
        except StripeError as e:
            logger.warning(
                "subscription_metadata_update_failed",
                subscription_id=subscription.id,
                user_id=user_id,
                error=str(e),
            )
            return BestEffortOutcome.failed("tag_subscription_user", subscription.id, e)
        return BestEffortOutcome(action="tag_subscription_user", target=subscription.id)

    async def summary(self, ref: SubscriptionRef) -> SubscriptionSummary:
        """Minimal status fields for a subscription or checkout session reference."""
        _, subscription = await self._load(ref)
        price = subscription.price
        return SubscriptionSummary(
            subscription_id=subscription.id,
            status=subscription.status.value,
            plan_id=price.id if price else None,
            interval=price.recurring_interval if price else None,
            amount=price.unit_amount if price else None,
            current_period_start=to_unix(subscription.current_period_start),
            current_period_end=to_unix(subscription.current_period_end),
        )
