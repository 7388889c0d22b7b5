"""
Billing API Routes.

Checkout, cancellation, post-checkout sync, subscription lookup and the
operator dashboard.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..cancellation import CancellationCoordinator
from ..checkout import CheckoutOrchestrator
from ..client import StripeClientInterface
from ..config import BillingConfig
from ..exceptions import BillingValidationError
from ..metrics import MetricsAggregator
from ..refs import SubscriptionRef
from ..sync import SubscriptionSyncer
from .dependencies import get_billing_config, get_stripe_client, require_stripe_client
from .responses import envelope, with_side_effects

logger = structlog.get_logger(__name__)

router = APIRouter()


# === Request Models ===


class _Request(BaseModel):
    # Frontends send numeric user IDs as often as strings
    model_config = ConfigDict(coerce_numbers_to_str=True)


class CheckoutRequest(_Request):
    """Request to start a subscription checkout."""

    price_id: str | None = Field(None, description="Stripe price ID")
    user_id: str | None = Field(None, description="Application user ID")
    email: str | None = Field(None, description="Email of the authenticated user")
    success_url: str | None = Field(None, description="Redirect after payment; host is not trusted")
    cancel_url: str | None = Field(None, description="Redirect if checkout is abandoned")


class CancelRequest(_Request):
    """Request to cancel one subscription, or all of a user's active ones."""

    user_id: str | None = None
    subscription_id: str | None = Field(
        None, description="Subscription ID (sub_...) or checkout session ID (cs_...)"
    )


class SyncRequest(_Request):
    """Request to sync a subscription after the checkout success redirect."""

    session_id: str | None = None
    subscription_id: str | None = None
    user_id: str | None = None
    email: str | None = None


class SubscriptionLookup(_Request):
    subscription_id: str | None = None
    session_id: str | None = None


# === Routes ===


@router.post("/payment/create-checkout-session", summary="Create checkout session")
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    client: StripeClientInterface = Depends(require_stripe_client),
    config: BillingConfig = Depends(get_billing_config),
) -> JSONResponse:
    """Create a Checkout session, or a billing portal session for paid subscribers."""
    orchestrator = CheckoutOrchestrator(client, config)
    result = await orchestrator.create_or_redirect(
        price_id=body.price_id,
        user_id=body.user_id,
        email=body.email,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        request_origin=request.headers.get("origin"),
    )

    data = with_side_effects(
        {
            "url": result.url,
            "sessionId": result.session_id,
            "customerId": result.customer_id,
            "portal": result.portal,
        },
        result.outcomes,
    )
    return envelope(
        data=data,
        message=result.message,
        url=result.url,
        sessionId=result.session_id,
        effectiveSuccessUrl=result.effective_success_url,
        effectiveCancelUrl=result.effective_cancel_url,
        portal=result.portal,
    )


@router.post("/payment/cancel-subscription", summary="Cancel subscription")
async def cancel_subscription(
    body: CancelRequest,
    client: StripeClientInterface = Depends(require_stripe_client),
) -> JSONResponse:
    ref = SubscriptionRef.parse(body.subscription_id) if body.subscription_id else None
    result = await CancellationCoordinator(client).cancel(body.user_id, ref)
    return envelope(
        data=with_side_effects(result.to_dict(), result.outcomes),
        message=result.message,
    )


@router.post("/payment/update-subscription", summary="Sync subscription after checkout")
async def update_subscription(
    body: SyncRequest,
    client: StripeClientInterface = Depends(require_stripe_client),
) -> JSONResponse:
    result = await SubscriptionSyncer(client).sync(
        session_id=body.session_id,
        subscription_id=body.subscription_id,
        user_id=body.user_id,
        email=body.email,
    )
    return envelope(
        data=with_side_effects(result.record.to_dict(), result.outcomes),
        message="Subscription synced from Stripe",
    )


async def _lookup(lookup: SubscriptionLookup, client: StripeClientInterface) -> JSONResponse:
    if lookup.subscription_id:
        ref = SubscriptionRef.subscription(lookup.subscription_id)
    elif lookup.session_id:
        ref = SubscriptionRef.session(lookup.session_id)
    else:
        raise BillingValidationError("Provide either subscription_id or session_id")

    summary = await SubscriptionSyncer(client).summary(ref)
    return envelope(data=summary.to_dict(), message="Subscription retrieved")


@router.get("/payment/get-subscription", summary="Get subscription")
async def get_subscription(
    subscription_id: str | None = None,
    session_id: str | None = None,
    client: StripeClientInterface = Depends(require_stripe_client),
) -> JSONResponse:
    lookup = SubscriptionLookup(subscription_id=subscription_id, session_id=session_id)
    return await _lookup(lookup, client)


@router.post("/payment/get-subscription", summary="Get subscription")
async def post_get_subscription(
    body: SubscriptionLookup | None = None,
    client: StripeClientInterface = Depends(require_stripe_client),
) -> JSONResponse:
    return await _lookup(body or SubscriptionLookup(), client)


@router.get("/dashboard", summary="Operator dashboard")
async def get_dashboard(
    client: StripeClientInterface | None = Depends(get_stripe_client),
    config: BillingConfig = Depends(get_billing_config),
) -> JSONResponse:
    """Aggregated subscription and revenue metrics; a demo payload without a Stripe key."""
    if client is None:
        logger.info("dashboard_demo_served")
        metrics = MetricsAggregator.demo()
    else:
        metrics = await MetricsAggregator(client, config).compute_dashboard()
    return envelope(data=metrics.to_dict(), message=metrics.message)
