"""
Subscription cancellation.

Cancels one subscription (by ``sub_`` or ``cs_`` reference) or every active
subscription tagged with the user's ID. Cancellation is immediate; the
customer is tagged ``canceled_by_user`` afterwards on a best-effort basis.
"""

import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from .client import StripeClientInterface
from .exceptions import BillingNotFoundError, BillingValidationError, StripeError
from .models import Subscription, SubscriptionStatus, to_unix
from .outcomes import BestEffortOutcome
from .pagination import fetch_all
from .refs import SubscriptionRef, resolve_subscription_id

logger = structlog.get_logger(__name__)


@dataclass
class CancellationResult:
    subscription_id: str
    status: str
    canceled_at: int | None = None
    already_canceled: bool = False
    checkout_session_id: str | None = None
    outcomes: list[BestEffortOutcome] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.already_canceled:
            return "Subscription was already canceled"
        return "Subscription canceled successfully"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "status": self.status,
            "canceledAt": self.canceled_at,
            "cancelAtPeriodEnd": False,
            "checkoutSessionId": self.checkout_session_id,
            "alreadyCanceled": self.already_canceled,
        }


@dataclass
class CancellationFailure:
    subscription_id: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"subscriptionId": self.subscription_id, "error": self.error}


@dataclass
class BulkCancellationResult:
    canceled: list[CancellationResult] = field(default_factory=list)
    failed: list[CancellationFailure] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Successfully canceled {len(self.canceled)} subscription(s)"

    @property
    def outcomes(self) -> list[BestEffortOutcome]:
        return [outcome for result in self.canceled for outcome in result.outcomes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "canceledSubscriptions": [result.to_dict() for result in self.canceled],
            "failedSubscriptions": [failure.to_dict() for failure in self.failed],
        }


class CancellationCoordinator:
    """Cancels subscriptions and reconciles their already-canceled state."""

    def __init__(self, client: StripeClientInterface):
        self.client = client

    async def cancel(
        self, user_id: str | None, ref: SubscriptionRef | None = None
    ) -> CancellationResult | BulkCancellationResult:
        """
        Cancel the referenced subscription, or all of the user's active ones.

        Args:
            user_id: Application user ID
            ref: Subscription or checkout session reference; None cancels
                every active subscription whose metadata names ``user_id``

        Returns:
            CancellationResult for a single reference, BulkCancellationResult otherwise

        Raises:
            BillingValidationError: If user_id is missing
            BillingNotFoundError: If nothing matches the reference or the user
            StripeError: If Stripe rejects the cancellation
        """
        if not user_id:
            raise BillingValidationError("User ID is required", details={"field": "user_id"})

        if ref is not None:
            return await self._cancel_one(user_id, ref)
        return await self._cancel_all(user_id)

    async def _cancel_one(self, user_id: str, ref: SubscriptionRef) -> CancellationResult:
        resolved = await resolve_subscription_id(self.client, ref)

        # Re-read the status so a repeated request reconciles instead of failing
        current = await self.client.get_subscription(resolved.subscription_id)
        if current is None:
            raise BillingNotFoundError(
                "Subscription not found",
                details={"subscription_id": resolved.subscription_id},
            )

        if current.status == SubscriptionStatus.CANCELED:
            logger.info(
                "subscription_already_canceled",
                subscription_id=current.id,
                user_id=user_id,
            )
            return CancellationResult(
                subscription_id=current.id,
                status=current.status.value,
                canceled_at=to_unix(current.canceled_at),
                already_canceled=True,
                checkout_session_id=ref.session_id,
            )

        result = await self._cancel_subscription(current.id, user_id)
        result.checkout_session_id = ref.session_id
        return result

    async def _cancel_all(self, user_id: str) -> BulkCancellationResult:
        active = await fetch_all(
            lambda cursor: self.client.list_subscriptions(
                status=SubscriptionStatus.ACTIVE.value,
                starting_after=cursor,
            )
        )
        owned = [sub for sub in active if sub.user_id == user_id]
        if not owned:
            raise BillingNotFoundError(
                "No active subscriptions found for this user",
                details={"user_id": user_id},
            )

        result = BulkCancellationResult()
        for subscription in owned:
            try:
                result.canceled.append(await self._cancel_subscription(subscription.id, user_id))
            except StripeError as e:
                logger.error(
                    "subscription_cancel_failed",
                    subscription_id=subscription.id,
                    user_id=user_id,
                    error=str(e),
                )
                result.failed.append(CancellationFailure(subscription.id, str(e)))

        logger.info(
            "user_subscriptions_canceled",
            user_id=user_id,
            canceled=len(result.canceled),
            failed=len(result.failed),
        )
        return result

    async def _cancel_subscription(self, subscription_id: str, user_id: str) -> CancellationResult:
        canceled = await self.client.cancel_subscription(subscription_id)
        logger.info("subscription_canceled", subscription_id=canceled.id, user_id=user_id)

        outcomes = []
        if canceled.customer_id:
            outcomes.append(await self._tag_customer(canceled))

        return CancellationResult(
            subscription_id=canceled.id,
            status=canceled.status.value,
            canceled_at=to_unix(canceled.canceled_at),
            outcomes=outcomes,
        )

    async def _tag_customer(self, subscription: Subscription) -> BestEffortOutcome:
        canceled_at = to_unix(subscription.canceled_at) or int(time.time())
        try:
            await self.client.update_customer(
                subscription.customer_id,
                metadata={"canceled_by_user": "true", "canceled_at": str(canceled_at)},
            )
        except StripeError as e:
            logger.warning(
                "customer_cancel_tag_failed",
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                error=str(e),
            )
            return BestEffortOutcome.failed("tag_customer_canceled", subscription.customer_id, e)
        return BestEffortOutcome(action="tag_customer_canceled", target=subscription.customer_id)
