"""
Tier classification.

Deployments model the free tier either as a $0 recurring price or as a
sentinel price ID; both signals are accepted.
"""

from .config import BillingConfig
from .models import Subscription, SubscriptionStatus

PRO = "pro"
PREMIUM = "premium"

# Only these statuses can block a new checkout
CLASSIFIED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class TierClassifier:
    """Decides whether a subscription is on the free tier."""

    def __init__(self, config: BillingConfig):
        self.free_price_id = config.free_price_id

    def is_free_tier(self, subscription: Subscription) -> bool:
        """True if any line item is zero-priced or uses the free price ID."""
        for item in subscription.items:
            if item.price.unit_amount == 0:
                return True
            if self.free_price_id and item.price.id == self.free_price_id:
                return True
        return False

    def blocks_checkout(self, subscription: Subscription) -> bool:
        """A paid active/trialing subscription must be managed, not re-bought."""
        if subscription.status not in CLASSIFIED_STATUSES:
            return False
        return not self.is_free_tier(subscription)


class PlanMatcher:
    """Maps a subscription's first line item to the pro or premium plan."""

    def __init__(self, config: BillingConfig):
        self.config = config

    def match(self, subscription: Subscription) -> str | None:
        price = subscription.price
        if price is None:
            return None

        # Price ID matches take precedence over product ID matches
        if self.config.pro_price_id and price.id == self.config.pro_price_id:
            return PRO
        if self.config.premium_price_id and price.id == self.config.premium_price_id:
            return PREMIUM
        if self.config.pro_product_id and price.product_id == self.config.pro_product_id:
            return PRO
        if self.config.premium_product_id and price.product_id == self.config.premium_product_id:
            return PREMIUM
        return None
