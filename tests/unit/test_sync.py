"""Tests for SubscriptionSyncer."""

from datetime import datetime, timezone

import pytest

from fluxos_billing.exceptions import (
    BillingNotFoundError,
    BillingValidationError,
    StripeSubscriptionError,
)
from fluxos_billing.mock import (
    MockStripeClient,
    checkout_session_factory,
    customer_factory,
    subscription_factory,
)
from fluxos_billing.refs import SubscriptionRef
from fluxos_billing.sync import SubscriptionSyncer

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 4, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def syncer(mock_client: MockStripeClient) -> SubscriptionSyncer:
    return SubscriptionSyncer(mock_client)


class TestSync:
    """Tests for the normalized record built after checkout."""

    @pytest.mark.asyncio
    async def test_record_from_session(self, mock_client, syncer):
        customer = mock_client.add_customer(customer_factory(email="stripe@example.com"))
        sub = mock_client.add_subscription(
            subscription_factory(
                customer_id=customer.id,
                price_id="price_pro",
                start_date=START,
                current_period_end=PERIOD_END,
            )
        )
        session = mock_client.add_checkout_session(
            checkout_session_factory(customer_id=customer.id, subscription_id=sub.id)
        )

        result = await syncer.sync(session_id=session.id, email="typed@example.com")

        assert result.record.to_dict() == {
            "subscriptionId": sub.id,
            "email": "stripe@example.com",
            "planId": "price_pro",
            "status": "active",
            "startDate": "2025-03-01T12:00:00Z",
            "renewalDate": "2025-04-01T12:00:00Z",
            "expiresAt": "2025-04-01T12:00:00Z",
            "autoRenew": True,
            "customerId": customer.id,
            "checkoutSessionId": session.id,
        }

    @pytest.mark.asyncio
    async def test_subscription_id_wins_over_session(self, mock_client, syncer):
        sub = mock_client.add_subscription(subscription_factory())

        result = await syncer.sync(session_id="cs_whatever", subscription_id=sub.id)

        assert result.record.subscription_id == sub.id
        assert result.record.checkout_session_id == "cs_whatever"
        assert mock_client.count_calls("get_checkout_session") == 0

    @pytest.mark.asyncio
    async def test_email_falls_back_to_supplied_then_empty(self, mock_client, syncer):
        sub = mock_client.add_subscription(subscription_factory(customer_id="cus_gone"))

        supplied = await syncer.sync(subscription_id=sub.id, email="typed@example.com")
        empty = await syncer.sync(subscription_id=sub.id)

        assert supplied.record.email == "typed@example.com"
        assert empty.record.email == ""

    @pytest.mark.asyncio
    async def test_dates_fall_back(self, mock_client, syncer):
        sub = mock_client.add_subscription(
            subscription_factory(start_date=None, current_period_end=None, cancel_at_period_end=True)
        )

        result = await syncer.sync(subscription_id=sub.id, now=START)

        assert result.record.start_date == "2025-03-01T12:00:00Z"
        assert result.record.renewal_date == result.record.start_date
        assert result.record.expires_at == result.record.start_date
        assert result.record.auto_renew is False

    @pytest.mark.asyncio
    async def test_differing_user_id_is_written(self, mock_client, syncer):
        sub = mock_client.add_subscription(subscription_factory(metadata={"user_id": "old"}))

        result = await syncer.sync(subscription_id=sub.id, user_id="u1")

        assert sub.user_id == "u1"
        assert [o.ok for o in result.outcomes] == [True]

    @pytest.mark.asyncio
    async def test_matching_user_id_is_left_alone(self, mock_client, syncer):
        sub = mock_client.add_subscription(subscription_factory(metadata={"user_id": "u1"}))

        result = await syncer.sync(subscription_id=sub.id, user_id="u1")

        assert result.outcomes == []
        assert mock_client.count_calls("update_subscription") == 0

    @pytest.mark.asyncio
    async def test_metadata_failure_is_recorded(self, mock_client, syncer):
        sub = mock_client.add_subscription(subscription_factory())
        mock_client.fail_on("update_subscription", StripeSubscriptionError("nope", http_status=400))

        result = await syncer.sync(subscription_id=sub.id, user_id="u1")

        assert result.record.subscription_id == sub.id
        assert result.outcomes[0].ok is False

    @pytest.mark.asyncio
    async def test_requires_an_id(self, syncer):
        with pytest.raises(BillingValidationError, match="Provide either subscription_id or session_id"):
            await syncer.sync(user_id="u1")

    @pytest.mark.asyncio
    async def test_session_without_subscription(self, mock_client, syncer):
        session = mock_client.add_checkout_session(checkout_session_factory())

        with pytest.raises(BillingNotFoundError):
            await syncer.sync(session_id=session.id)


class TestSummary:
    @pytest.mark.asyncio
    async def test_summary_fields(self, mock_client, syncer):
        sub = mock_client.add_subscription(
            subscription_factory(
                price_id="price_pro",
                unit_amount=2900,
                recurring_interval="year",
                current_period_start=START,
                current_period_end=PERIOD_END,
            )
        )

        summary = await syncer.summary(SubscriptionRef.subscription(sub.id))

        assert summary.to_dict() == {
            "subscriptionId": sub.id,
            "status": "active",
            "planId": "price_pro",
            "interval": "year",
            "amount": 2900,
            "current_period_start": int(START.timestamp()),
            "current_period_end": int(PERIOD_END.timestamp()),
        }

    @pytest.mark.asyncio
    async def test_summary_missing_subscription(self, syncer):
        with pytest.raises(BillingNotFoundError):
            await syncer.summary(SubscriptionRef.subscription("sub_missing"))
