"""
Billing configuration.

Environment-driven ``Settings`` plus the explicit configuration objects
handed to each component at construction time.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache

from pydantic_settings import BaseSettings

from .exceptions import BillingConfigError

DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:3000,http://localhost:3001,http://localhost:3002,"
    "http://localhost:3003,http://localhost:5173,http://localhost:5174,"
    "http://localhost:5175"
)
LOCALHOST_ORIGIN_RE = re.compile(r"^http://localhost(:\d+)?$")


@dataclass
class StripeConfig:
    """Configuration for the Stripe client.

    Args:
        api_key: Stripe secret key (sk_live_* or sk_test_*)
        timeout: Per-call timeout in seconds
        max_retries: Retries performed by the Stripe SDK itself
    """

    api_key: str
    timeout: float = 30.0
    max_retries: int = 0

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.api_key:
            raise BillingConfigError("api_key is required")

        if not self.api_key.startswith(("sk_live_", "sk_test_", "rk_live_", "rk_test_")):
            raise BillingConfigError(
                "api_key must be a valid Stripe secret key (sk_*) or restricted key (rk_*)"
            )

        if self.timeout <= 0:
            raise BillingConfigError("timeout must be positive")

        if self.max_retries < 0:
            raise BillingConfigError("max_retries must be non-negative")

    @property
    def is_test_mode(self) -> bool:
        """Check if using test mode API key."""
        return "_test_" in self.api_key

    @property
    def is_live_mode(self) -> bool:
        """Check if using live mode API key."""
        return "_live_" in self.api_key


@dataclass(frozen=True)
class BillingConfig:
    """Pricing and redirect rules shared by the billing components.

    Args:
        free_price_id: Price ID of the free tier, if the deployment uses a sentinel price
        pro_price_id: Price ID counted as the "pro" tier
        premium_price_id: Price ID counted as the "premium" tier
        pro_product_id: Product ID counted as "pro" when the price ID does not match
        premium_product_id: Product ID counted as "premium" when the price ID does not match
        frontend_origin: Default trusted origin for redirect URLs; when set, arbitrary
            localhost ports are no longer trusted
        allowed_origins: Additional origins accepted as redirect targets
    """

    free_price_id: str | None = None
    pro_price_id: str | None = None
    premium_price_id: str | None = None
    pro_product_id: str | None = None
    premium_product_id: str | None = None
    frontend_origin: str | None = None
    allowed_origins: tuple[str, ...] = field(default_factory=tuple)

    def is_allowed_origin(self, origin: str | None) -> bool:
        """Check whether an origin may be used as a redirect host."""
        if not origin:
            return False
        origin = origin.rstrip("/")
        if self.frontend_origin:
            return origin == self.frontend_origin.rstrip("/") or origin in self.allowed_origins
        if LOCALHOST_ORIGIN_RE.match(origin):
            return True
        return origin in self.allowed_origins


class Settings(BaseSettings):
    """Application settings"""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # "console" or "json"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_TIMEOUT: float = 30.0

    # Tier identifiers
    STRIPE_FREE_PRICE_ID: str = ""
    STRIPE_PRO_PRICE_ID: str = ""
    STRIPE_PREMIUM_PRICE_ID: str = ""
    STRIPE_PRO_PRODUCT_ID: str = ""
    STRIPE_PREMIUM_PRODUCT_ID: str = ""

    # Frontend / CORS
    FRONTEND_ORIGIN: str = ""
    ALLOWED_ORIGINS: str = DEFAULT_ALLOWED_ORIGINS

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse allowed origins from comma-separated string"""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def stripe_configured(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY.strip())

    def stripe_config(self) -> StripeConfig | None:
        """Build the Stripe client config, or None when no key is set."""
        if not self.stripe_configured:
            return None
        return StripeConfig(
            api_key=self.STRIPE_SECRET_KEY.strip(),
            timeout=self.STRIPE_TIMEOUT,
        )

    def billing_config(self) -> BillingConfig:
        return BillingConfig(
            free_price_id=self.STRIPE_FREE_PRICE_ID or None,
            pro_price_id=self.STRIPE_PRO_PRICE_ID or None,
            premium_price_id=self.STRIPE_PREMIUM_PRICE_ID or None,
            pro_product_id=self.STRIPE_PRO_PRODUCT_ID or None,
            premium_product_id=self.STRIPE_PREMIUM_PRODUCT_ID or None,
            frontend_origin=self.FRONTEND_ORIGIN.rstrip("/") or None,
            allowed_origins=tuple(o.rstrip("/") for o in self.allowed_origins_list),
        )

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
