"""
Subscription references.

Callers identify a subscription either directly (``sub_...``) or through the
checkout session that created it (``cs_...``). The prefix is inspected once,
here; everything downstream works with the parsed ``SubscriptionRef``.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from .client import StripeClientInterface
from .exceptions import BillingNotFoundError, BillingValidationError

logger = structlog.get_logger(__name__)

SESSION_PREFIX = "cs_"


class RefKind(str, Enum):
    SESSION = "session"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class SubscriptionRef:
    """A subscription identified directly or via its checkout session."""

    kind: RefKind
    id: str

    @classmethod
    def parse(cls, raw: str) -> "SubscriptionRef":
        raw = (raw or "").strip()
        if not raw:
            raise BillingValidationError("Subscription or session ID must not be empty")
        if raw.startswith(SESSION_PREFIX):
            return cls(RefKind.SESSION, raw)
        return cls(RefKind.SUBSCRIPTION, raw)

    @classmethod
    def session(cls, session_id: str) -> "SubscriptionRef":
        return cls(RefKind.SESSION, session_id)

    @classmethod
    def subscription(cls, subscription_id: str) -> "SubscriptionRef":
        return cls(RefKind.SUBSCRIPTION, subscription_id)

    @property
    def is_session(self) -> bool:
        return self.kind is RefKind.SESSION

    @property
    def session_id(self) -> str | None:
        return self.id if self.is_session else None


@dataclass
class ResolvedRef:
    """A reference resolved to a subscription ID."""

    subscription_id: str
    session_id: str | None = None
    session_customer_id: str | None = None


async def resolve_subscription_id(
    client: StripeClientInterface, ref: SubscriptionRef
) -> ResolvedRef:
    """Resolve a reference to the subscription it points at.

    Raises:
        BillingNotFoundError: The session does not exist or has no subscription yet
    """
    if not ref.is_session:
        return ResolvedRef(subscription_id=ref.id)

    session = await client.get_checkout_session(ref.id)
    if session is None:
        raise BillingNotFoundError(
            "Checkout session not found",
            details={"session_id": ref.id},
        )
    if not session.subscription_id:
        logger.info("checkout_session_without_subscription", session_id=ref.id)
        raise BillingNotFoundError(
            "No subscription found for this checkout session",
            details={"session_id": ref.id},
        )

    logger.debug(
        "checkout_session_resolved",
        session_id=ref.id,
        subscription_id=session.subscription_id,
    )
    return ResolvedRef(
        subscription_id=session.subscription_id,
        session_id=session.id,
        session_customer_id=session.customer_id,
    )
