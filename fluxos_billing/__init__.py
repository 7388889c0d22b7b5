"""
    fluxos-billing - Stripe-backed subscription billing core.

    Customer reconciliation, idempotent checkout, cancellation, post-checkout
    sync and dashboard metrics, with no local billing database.

Example usage:
    from fluxos_billing import (
        BillingConfig,
        CheckoutOrchestrator,
        StripeClient,
        StripeConfig,
    )

    client = StripeClient(StripeConfig(api_key="sk_test_..."))
    config = BillingConfig(frontend_origin="https://app.example.com")

    # Send a new user to Checkout, or a paid subscriber to the billing portal
    result = await CheckoutOrchestrator(client, config).create_or_redirect(
        price_id="price_...",
        user_id="user-123",
        email="user@example.com",
    )
    redirect_to(result.url)
"""

from .cancellation import BulkCancellationResult, CancellationCoordinator, CancellationResult
from .checkout import CheckoutOrchestrator, CheckoutResult
from .client import StripeClient, StripeClientInterface
from .config import BillingConfig, Settings, StripeConfig, get_settings
from .customers import CustomerResolver, ResolvedCustomer
from .exceptions import (
    BillingConfigError,
    BillingError,
    BillingNotFoundError,
    BillingValidationError,
    MetricsAggregationError,
    StripeConnectionError,
    StripeCustomerError,
    StripeError,
    StripeInvoiceError,
    StripePaymentError,
    StripeSubscriptionError,
)
from .metrics import DashboardMetrics, MetricsAggregator
from .models import (
    CheckoutSession,
    Customer,
    Invoice,
    NormalizedSubscriptionRecord,
    Page,
    Price,
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    SubscriptionSummary,
)
from .outcomes import BestEffortOutcome
from .pagination import fetch_all
from .refs import SubscriptionRef
from .sync import SubscriptionSyncer, SyncResult
from .tiers import PlanMatcher, TierClassifier
from .version import __version__

__all__ = [
    # Components
    "CustomerResolver",
    "ResolvedCustomer",
    "TierClassifier",
    "PlanMatcher",
    "CheckoutOrchestrator",
    "CheckoutResult",
    "CancellationCoordinator",
    "CancellationResult",
    "BulkCancellationResult",
    "SubscriptionSyncer",
    "SyncResult",
    "MetricsAggregator",
    "DashboardMetrics",
    # Client
    "StripeClient",
    "StripeClientInterface",
    # Config
    "BillingConfig",
    "StripeConfig",
    "Settings",
    "get_settings",
    # Exceptions
    "BillingError",
    "BillingConfigError",
    "BillingValidationError",
    "BillingNotFoundError",
    "MetricsAggregationError",
    "StripeError",
    "StripeConnectionError",
    "StripeCustomerError",
    "StripeInvoiceError",
    "StripePaymentError",
    "StripeSubscriptionError",
    # Models
    "Customer",
    "Price",
    "Subscription",
    "SubscriptionItem",
    "SubscriptionStatus",
    "SubscriptionSummary",
    "CheckoutSession",
    "Invoice",
    "Page",
    "NormalizedSubscriptionRecord",
    # Helpers
    "BestEffortOutcome",
    "SubscriptionRef",
    "fetch_all",
    # Version
    "__version__",
]
