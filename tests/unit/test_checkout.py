"""Tests for CheckoutOrchestrator."""

import pytest

from fluxos_billing import BillingConfig
from fluxos_billing.cancellation import CancellationCoordinator
from fluxos_billing.checkout import (
    CHECKOUT_MESSAGE,
    IDEMPOTENCY_WINDOW_SECONDS,
    PORTAL_MESSAGE,
    CheckoutOrchestrator,
    normalize_redirect,
    origin_of,
)
from fluxos_billing.exceptions import BillingValidationError, StripePaymentError
from fluxos_billing.mock import MockStripeClient, customer_factory, subscription_factory
from fluxos_billing.refs import SubscriptionRef

ORIGIN = "https://app.example.com"
NOW_TS = 1_750_000_200.0


@pytest.fixture
def orchestrator(mock_client: MockStripeClient, billing_config: BillingConfig) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(mock_client, billing_config, clock=lambda: NOW_TS)


def _existing_customer(mock_client: MockStripeClient, user_id: str = "u1"):
    return mock_client.add_customer(
        customer_factory(email="a@example.com", metadata={"user_id": user_id})
    )


class TestRedirectHelpers:
    def test_origin_of(self):
        assert origin_of("https://app.example.com/x?y=1") == "https://app.example.com"
        assert origin_of("http://localhost:5173/plans") == "http://localhost:5173"
        assert origin_of("/relative/path") is None
        assert origin_of("javascript:alert(1)") is None
        assert origin_of("https://user@evil.com/") is None
        assert origin_of(None) is None

    def test_normalize_keeps_path_query_fragment(self):
        url = normalize_redirect("https://evil.com/done?x=1#top", ORIGIN, "/default")
        assert url == "https://app.example.com/done?x=1#top"

    def test_normalize_defaults(self):
        assert normalize_redirect(None, ORIGIN, "/plans") == f"{ORIGIN}/plans"
        assert normalize_redirect("  ", ORIGIN, "/plans") == f"{ORIGIN}/plans"
        assert normalize_redirect("javascript:alert(1)", ORIGIN, "/plans") == f"{ORIGIN}/plans"
        assert normalize_redirect("http://[::1", ORIGIN, "/plans") == f"{ORIGIN}/plans"

    def test_normalize_protocol_relative(self):
        assert normalize_redirect("//evil.com/steal", ORIGIN, "/plans") == f"{ORIGIN}/steal"

    def test_normalize_relative_path(self):
        assert normalize_redirect("done", ORIGIN, "/plans") == f"{ORIGIN}/done"


class TestTrustedOrigin:
    def test_allowed_success_origin_wins(self, orchestrator):
        assert (
            orchestrator.resolve_origin("https://staging.example.com/ok")
            == "https://staging.example.com"
        )

    def test_localhost_success_url_is_ignored_in_production(self, orchestrator):
        assert orchestrator.resolve_origin("http://localhost:9999/ok") == ORIGIN

    def test_localhost_success_origin_used_in_development(self, mock_client):
        orchestrator = CheckoutOrchestrator(mock_client, BillingConfig())
        assert orchestrator.resolve_origin("http://localhost:3001/ok") == "http://localhost:3001"

    def test_untrusted_success_origin_falls_back_to_frontend(self, orchestrator):
        assert orchestrator.resolve_origin("https://evil.com/ok") == ORIGIN

    def test_request_origin_used_without_frontend_origin(self, mock_client):
        orchestrator = CheckoutOrchestrator(mock_client, BillingConfig())
        assert orchestrator.resolve_origin(None, "http://localhost:5174") == "http://localhost:5174"
        assert orchestrator.resolve_origin(None, "https://evil.com") == "http://localhost:3000"


class TestCheckout:
    """Tests for new checkout sessions."""

    @pytest.mark.asyncio
    async def test_missing_fields(self, orchestrator):
        with pytest.raises(BillingValidationError, match="Price ID and User ID are required"):
            await orchestrator.create_or_redirect(price_id="", user_id="u1")
        with pytest.raises(BillingValidationError):
            await orchestrator.create_or_redirect(price_id="price_pro", user_id=None)

    @pytest.mark.asyncio
    async def test_new_user_gets_checkout(self, mock_client, orchestrator):
        result = await orchestrator.create_or_redirect(
            price_id="price_pro", user_id="u1", email="a@example.com"
        )

        assert result.portal is False
        assert result.message == CHECKOUT_MESSAGE
        assert result.url.startswith("https://checkout.stripe.com/")
        assert result.effective_success_url == (
            f"{ORIGIN}/subscription-success?session_id={{CHECKOUT_SESSION_ID}}"
        )
        assert result.effective_cancel_url == f"{ORIGIN}/plans?status=cancelled"

        session = await mock_client.get_checkout_session(result.session_id)
        assert session.customer_id == result.customer_id
        assert session.client_reference_id == "u1"
        assert session.metadata == {"user_id": "u1"}

    @pytest.mark.asyncio
    async def test_subscription_carries_user_id(self, mock_client, orchestrator):
        result = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        sub = mock_client.simulate_checkout_complete(result.session_id)

        assert sub.user_id == "u1"

    @pytest.mark.asyncio
    async def test_duplicate_submission_reuses_session(self, mock_client, orchestrator):
        kwargs = dict(
            price_id="price_pro",
            user_id="u1",
            email="a@example.com",
            success_url=f"{ORIGIN}/ok",
            cancel_url=f"{ORIGIN}/no",
        )
        first = await orchestrator.create_or_redirect(**kwargs)
        second = await orchestrator.create_or_redirect(**kwargs)

        assert first.session_id == second.session_id
        assert len(mock_client.customers) == 1

    @pytest.mark.asyncio
    async def test_resubscribe_after_cancel_gets_new_session(self, mock_client, orchestrator):
        first = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")
        sub = mock_client.simulate_checkout_complete(first.session_id)
        await CancellationCoordinator(mock_client).cancel("u1", SubscriptionRef.parse(sub.id))

        again = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert again.portal is False
        assert again.session_id != first.session_id
        session = await mock_client.get_checkout_session(again.session_id)
        assert session.status == "open"

    @pytest.mark.asyncio
    async def test_identical_request_after_window_gets_new_session(self, mock_client, billing_config):
        now = [NOW_TS]
        orchestrator = CheckoutOrchestrator(mock_client, billing_config, clock=lambda: now[0])

        first = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")
        now[0] += 5
        retried = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")
        now[0] += IDEMPOTENCY_WINDOW_SECONDS
        later = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert retried.session_id == first.session_id
        assert later.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_untrusted_host_never_reaches_session(self, mock_client, orchestrator):
        result = await orchestrator.create_or_redirect(
            price_id="price_pro",
            user_id="u1",
            success_url="https://evil.com/ok?x=1",
            cancel_url="https://evil.com/no",
        )

        session = await mock_client.get_checkout_session(result.session_id)
        assert session.success_url == f"{ORIGIN}/ok?x=1"
        assert session.cancel_url == f"{ORIGIN}/no"
        assert "evil.com" not in result.effective_success_url

    @pytest.mark.asyncio
    async def test_free_tier_subscriber_can_upgrade(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        mock_client.add_subscription(
            subscription_factory(customer_id=customer.id, price_id="price_free", unit_amount=0)
        )

        result = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert result.portal is False
        assert mock_client.portal_sessions == []

    @pytest.mark.asyncio
    async def test_past_due_does_not_block(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        mock_client.add_subscription(
            subscription_factory(customer_id=customer.id, price_id="price_pro", status="past_due")
        )

        result = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert result.portal is False

    @pytest.mark.asyncio
    async def test_session_failure_propagates(self, mock_client, orchestrator):
        mock_client.fail_on(
            "create_checkout_session",
            StripePaymentError("No such price: 'price_x'", http_status=400),
        )

        with pytest.raises(StripePaymentError) as exc_info:
            await orchestrator.create_or_redirect(price_id="price_x", user_id="u1")
        assert exc_info.value.status_code == 400


class TestPortalRedirect:
    """Paid subscribers are sent to the billing portal."""

    @pytest.mark.asyncio
    async def test_paid_active_goes_to_portal(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        sub = mock_client.add_subscription(
            subscription_factory(customer_id=customer.id, price_id="price_pro", unit_amount=2900)
        )

        result = await orchestrator.create_or_redirect(price_id="price_premium", user_id="u1")

        assert result.portal is True
        assert result.message == PORTAL_MESSAGE
        assert result.session_id is None
        assert result.existing_subscription_id == sub.id
        assert result.url.startswith("https://billing.stripe.com/")
        assert mock_client.count_calls("create_checkout_session") == 0
        assert mock_client.portal_sessions[0]["return_url"] == f"{ORIGIN}/plans"

    @pytest.mark.asyncio
    async def test_trialing_goes_to_portal(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        mock_client.add_subscription(
            subscription_factory(customer_id=customer.id, price_id="price_pro", status="trialing")
        )

        result = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert result.portal is True

    @pytest.mark.asyncio
    async def test_portal_return_url_uses_success_url(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        mock_client.add_subscription(subscription_factory(customer_id=customer.id))

        await orchestrator.create_or_redirect(
            price_id="price_pro", user_id="u1", success_url="https://evil.com/account"
        )

        assert mock_client.portal_sessions[0]["return_url"] == f"{ORIGIN}/account"

    @pytest.mark.asyncio
    async def test_paid_subscription_behind_free_one_still_blocks(self, mock_client, orchestrator):
        customer = _existing_customer(mock_client)
        mock_client.add_subscription(subscription_factory(customer_id=customer.id))
        mock_client.add_subscription(
            subscription_factory(customer_id=customer.id, unit_amount=0)
        )

        result = await orchestrator.create_or_redirect(price_id="price_pro", user_id="u1")

        assert result.portal is True
