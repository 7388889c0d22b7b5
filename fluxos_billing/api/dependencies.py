"""FastAPI dependencies for the billing routes."""

from functools import lru_cache

from fastapi import Depends

from ..client import StripeClient, StripeClientInterface
from ..config import BillingConfig, Settings, StripeConfig, get_settings
from ..exceptions import BillingConfigError

NOT_CONFIGURED_MESSAGE = "Payment server is not configured. Missing STRIPE_SECRET_KEY."


def get_billing_config(settings: Settings = Depends(get_settings)) -> BillingConfig:
    return settings.billing_config()


@lru_cache
def _client_for(api_key: str, timeout: float, max_retries: int) -> StripeClient:
    return StripeClient(StripeConfig(api_key=api_key, timeout=timeout, max_retries=max_retries))


def get_stripe_client(
    settings: Settings = Depends(get_settings),
) -> StripeClientInterface | None:
    """Stripe client for the configured key, or None when no key is set."""
    config = settings.stripe_config()
    if config is None:
        return None
    # One client per distinct configuration
    return _client_for(config.api_key, config.timeout, config.max_retries)


def require_stripe_client(
    client: StripeClientInterface | None = Depends(get_stripe_client),
) -> StripeClientInterface:
    if client is None:
        raise BillingConfigError(NOT_CONFIGURED_MESSAGE)
    return client
