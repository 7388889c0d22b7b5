"""Shared test fixtures."""

import os

import pytest
import structlog

from fluxos_billing import BillingConfig, StripeClient, StripeConfig
from fluxos_billing.mock import MockStripeClient

FREE_PRICE_ID = "price_free"
PRO_PRICE_ID = "price_pro"
PREMIUM_PRICE_ID = "price_premium"
PRO_PRODUCT_ID = "prod_pro"
PREMIUM_PRODUCT_ID = "prod_premium"
FRONTEND_ORIGIN = "https://app.example.com"


def pytest_configure(config):
    config.addinivalue_line("markers", "e2e: runs against the real Stripe test mode API")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@pytest.fixture
def mock_client() -> MockStripeClient:
    """Create a mock Stripe client for unit tests."""
    return MockStripeClient()


@pytest.fixture
def test_config() -> StripeConfig:
    """Create a test config with fake API key."""
    return StripeConfig(api_key="sk_test_fake123456789")


@pytest.fixture
def billing_config() -> BillingConfig:
    """Billing config with a free sentinel price and pro/premium identifiers."""
    return BillingConfig(
        free_price_id=FREE_PRICE_ID,
        pro_price_id=PRO_PRICE_ID,
        premium_price_id=PREMIUM_PRICE_ID,
        pro_product_id=PRO_PRODUCT_ID,
        premium_product_id=PREMIUM_PRODUCT_ID,
        frontend_origin=FRONTEND_ORIGIN,
        allowed_origins=("https://staging.example.com",),
    )


@pytest.fixture
def live_config() -> StripeConfig | None:
    """Create a config for E2E tests with real Stripe.

    Returns None if STRIPE_TEST_API_KEY is not set.
    """
    api_key = os.environ.get("STRIPE_TEST_API_KEY")
    if not api_key:
        return None
    return StripeConfig(api_key=api_key)


@pytest.fixture
def live_client(live_config: StripeConfig | None) -> StripeClient | None:
    """Create a real Stripe client for E2E tests.

    Returns None if STRIPE_TEST_API_KEY is not set.
    """
    if not live_config:
        return None
    return StripeClient(live_config)


@pytest.fixture
def test_price_id() -> str | None:
    """Get a test price ID for checkout tests.

    Returns None if STRIPE_TEST_PRICE_ID is not set.
    """
    return os.environ.get("STRIPE_TEST_PRICE_ID")
