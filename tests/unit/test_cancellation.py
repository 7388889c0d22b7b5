"""Tests for CancellationCoordinator."""

import pytest

from fluxos_billing.cancellation import (
    BulkCancellationResult,
    CancellationCoordinator,
    CancellationResult,
)
from fluxos_billing.exceptions import (
    BillingNotFoundError,
    BillingValidationError,
    StripeCustomerError,
    StripeSubscriptionError,
)
from fluxos_billing.mock import (
    MockStripeClient,
    checkout_session_factory,
    customer_factory,
    subscription_factory,
)
from fluxos_billing.models import SubscriptionStatus
from fluxos_billing.refs import SubscriptionRef


@pytest.fixture
def coordinator(mock_client: MockStripeClient) -> CancellationCoordinator:
    return CancellationCoordinator(mock_client)


class TestCancelByReference:
    """Tests for cancelling a referenced subscription."""

    @pytest.mark.asyncio
    async def test_cancels_and_tags_customer(self, mock_client, coordinator):
        customer = mock_client.add_customer(customer_factory(metadata={"user_id": "u1"}))
        sub = mock_client.add_subscription(subscription_factory(customer_id=customer.id))

        result = await coordinator.cancel("u1", SubscriptionRef.parse(sub.id))

        assert isinstance(result, CancellationResult)
        assert result.status == "canceled"
        assert result.already_canceled is False
        assert result.canceled_at is not None
        assert result.message == "Subscription canceled successfully"
        assert customer.metadata["canceled_by_user"] == "true"
        assert customer.metadata["canceled_at"] == str(result.canceled_at)
        assert customer.metadata["user_id"] == "u1"
        assert [o.ok for o in result.outcomes] == [True]

    @pytest.mark.asyncio
    async def test_second_cancel_reports_already_canceled(self, mock_client, coordinator):
        customer = mock_client.add_customer(customer_factory())
        sub = mock_client.add_subscription(subscription_factory(customer_id=customer.id))
        ref = SubscriptionRef.parse(sub.id)

        await coordinator.cancel("u1", ref)
        second = await coordinator.cancel("u1", ref)

        assert second.already_canceled is True
        assert second.status == "canceled"
        assert second.message == "Subscription was already canceled"
        assert second.to_dict()["alreadyCanceled"] is True
        assert mock_client.count_calls("cancel_subscription") == 1
        assert mock_client.count_calls("update_customer") == 1

    @pytest.mark.asyncio
    async def test_session_reference(self, mock_client, coordinator):
        customer = mock_client.add_customer(customer_factory())
        sub = mock_client.add_subscription(subscription_factory(customer_id=customer.id))
        session = mock_client.add_checkout_session(
            checkout_session_factory(customer_id=customer.id, subscription_id=sub.id)
        )

        result = await coordinator.cancel("u1", SubscriptionRef.parse(session.id))

        assert result.subscription_id == sub.id
        assert result.checkout_session_id == session.id
        assert sub.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_session_without_subscription(self, mock_client, coordinator):
        session = mock_client.add_checkout_session(checkout_session_factory())

        with pytest.raises(BillingNotFoundError, match="No subscription found"):
            await coordinator.cancel("u1", SubscriptionRef.parse(session.id))
        assert mock_client.count_calls("cancel_subscription") == 0

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, coordinator):
        with pytest.raises(BillingNotFoundError):
            await coordinator.cancel("u1", SubscriptionRef.parse("sub_missing"))

    @pytest.mark.asyncio
    async def test_tag_failure_does_not_fail_cancel(self, mock_client, coordinator):
        customer = mock_client.add_customer(customer_factory())
        sub = mock_client.add_subscription(subscription_factory(customer_id=customer.id))
        mock_client.fail_on("update_customer", StripeCustomerError("rate limited", http_status=429))

        result = await coordinator.cancel("u1", SubscriptionRef.parse(sub.id))

        assert result.status == "canceled"
        assert result.outcomes[0].ok is False
        assert result.outcomes[0].action == "tag_customer_canceled"
        assert "rate limited" in result.outcomes[0].error

    @pytest.mark.asyncio
    async def test_missing_user_id(self, coordinator):
        with pytest.raises(BillingValidationError, match="User ID is required"):
            await coordinator.cancel("", SubscriptionRef.parse("sub_1"))


class TestCancelAll:
    """Tests for cancelling every active subscription of a user."""

    @pytest.mark.asyncio
    async def test_cancels_only_the_users_active_subscriptions(self, mock_client, coordinator):
        customer = mock_client.add_customer(customer_factory())
        mine = [
            mock_client.add_subscription(
                subscription_factory(customer_id=customer.id, metadata={"user_id": "u1"})
            )
            for _ in range(3)
        ]
        other = mock_client.add_subscription(subscription_factory(metadata={"user_id": "u2"}))

        result = await coordinator.cancel("u1")

        assert isinstance(result, BulkCancellationResult)
        assert {r.subscription_id for r in result.canceled} == {s.id for s in mine}
        assert result.failed == []
        assert result.message == "Successfully canceled 3 subscription(s)"
        assert other.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_walks_every_page(self, mock_client, coordinator):
        target = mock_client.add_subscription(subscription_factory(metadata={"user_id": "u1"}))
        for _ in range(150):
            mock_client.add_subscription(subscription_factory(metadata={"user_id": "other"}))

        result = await coordinator.cancel("u1")

        assert [r.subscription_id for r in result.canceled] == [target.id]
        assert mock_client.count_calls("list_subscriptions") == 2

    @pytest.mark.asyncio
    async def test_per_subscription_failures_are_reported(self, mock_client, coordinator):
        for _ in range(2):
            mock_client.add_subscription(subscription_factory(metadata={"user_id": "u1"}))

        original = mock_client.cancel_subscription
        attempts = []

        async def flaky_cancel(subscription_id):
            attempts.append(subscription_id)
            if len(attempts) == 1:
                raise StripeSubscriptionError("card declined", http_status=402)
            return await original(subscription_id)

        mock_client.cancel_subscription = flaky_cancel

        result = await coordinator.cancel("u1")

        assert len(result.canceled) == 1
        assert len(result.failed) == 1
        assert result.failed[0].subscription_id == attempts[0]
        assert result.to_dict()["failedSubscriptions"][0]["error"] == "card declined"

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, mock_client, coordinator):
        mock_client.add_subscription(
            subscription_factory(metadata={"user_id": "u1"}, status="canceled")
        )

        with pytest.raises(BillingNotFoundError, match="No active subscriptions found"):
            await coordinator.cancel("u1")
