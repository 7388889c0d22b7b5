"""
Dashboard metrics aggregation.

Every number is recomputed from Stripe on each request by walking the
paginated subscription and invoice listings. A failed pass fails the whole
dashboard; partial metrics are never returned.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from .client import StripeClientInterface
from .config import BillingConfig
from .exceptions import MetricsAggregationError
from .models import Subscription, SubscriptionStatus, to_unix
from .pagination import fetch_all
from .tiers import PREMIUM, PRO, PlanMatcher

logger = structlog.get_logger(__name__)

TREND_MONTHS = 6
QUARTER_MONTHS = 3
RECENT_LIMIT = 10

DASHBOARD_MESSAGE = "Dashboard data retrieved successfully"
DEMO_MESSAGE = "Demo dashboard (no STRIPE_SECRET_KEY configured)"

TIER_LABELS = {PRO: "Pro", PREMIUM: "Premium"}


def month_start(year: int, month: int) -> datetime:
    """First instant of a month in UTC; months outside 1-12 roll the year."""
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def month_window(now: datetime, months_back: int = 0) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds of the month ``months_back`` months before ``now``."""
    now = now.astimezone(timezone.utc)
    start = month_start(now.year, now.month - months_back)
    end = month_start(start.year, start.month + 1) - timedelta(seconds=1)
    return start, end


def day_window(now: datetime) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds of the day containing ``now``."""
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(seconds=1)


def growth_percent(current: int, previous: int) -> float:
    if previous <= 0:
        return 0
    return round((current - previous) / previous * 100, 1)


@dataclass
class SubscriptionTally:
    total: int = 0
    active: int = 0
    trialing: int = 0
    past_due: int = 0
    canceled: int = 0
    incomplete: int = 0
    pro: int = 0
    premium: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "trialing": self.trialing,
            "pastDue": self.past_due,
            "canceled": self.canceled,
            "incomplete": self.incomplete,
        }


@dataclass
class InvoiceSum:
    total_cents: int = 0
    count: int = 0


@dataclass
class TrendPoint:
    month: str
    revenue_cents: int
    invoice_count: int

    @property
    def revenue(self) -> int:
        """Revenue in whole currency units."""
        return round(self.revenue_cents / 100)


@dataclass
class TierCount:
    total: int = 0
    new: int = 0
    churn: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "new": self.new, "churn": self.churn}


@dataclass
class RecentSubscription:
    id: str
    tier: str
    period: str
    amount_cents: int
    status: str
    user_name: str | None = None
    user_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "tier": self.tier,
            "period": self.period,
            "amountCents": self.amount_cents,
            "status": self.status,
        }


@dataclass
class DashboardMetrics:
    """Operator dashboard payload."""

    subscriptions: SubscriptionTally
    current_month: InvoiceSum
    last_month: InvoiceSum
    growth_percent: float
    trend: list[TrendPoint]
    traffic_today: int
    traffic_monthly: int
    traffic_quarterly: int
    premium: TierCount = field(default_factory=TierCount)
    pro: TierCount = field(default_factory=TierCount)
    recent_subscriptions: list[RecentSubscription] = field(default_factory=list)
    users_total: int = 0
    users_new_this_month: int = 0
    message: str = DASHBOARD_MESSAGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "overview": {
                "users": {
                    "total": self.users_total,
                    "newThisMonth": self.users_new_this_month,
                },
                "subscriptions": self.subscriptions.to_dict(),
                "revenue": {
                    "amountCents": self.current_month.total_cents,
                    "count": self.current_month.count,
                    "period": "month",
                    "growth": {
                        "currentMonth": self.current_month.total_cents,
                        "lastMonth": self.last_month.total_cents,
                        "growthPercent": self.growth_percent,
                    },
                },
                "premiumCustomers": self.premium.to_dict(),
                "proCustomers": self.pro.to_dict(),
                "traffic": {
                    "today": self.traffic_today,
                    "monthly": self.traffic_monthly,
                    "quarterly": self.traffic_quarterly,
                },
            },
            "charts": {
                "revenueTrend": [
                    {"month": point.month, "revenue": point.revenue} for point in self.trend
                ],
                "trafficTrend": [
                    {"month": point.month, "traffic": point.invoice_count} for point in self.trend
                ],
            },
            "recentSubscriptions": [row.to_dict() for row in self.recent_subscriptions],
        }


class MetricsAggregator:
    """Computes dashboard metrics from Stripe listings."""

    def __init__(self, client: StripeClientInterface, config: BillingConfig):
        self.client = client
        self.matcher = PlanMatcher(config)

    async def tally_subscriptions(self) -> SubscriptionTally:
        """Count subscriptions per status; tier counts include active ones only."""
        subscriptions = await fetch_all(
            lambda cursor: self.client.list_subscriptions(status="all", starting_after=cursor)
        )

        tally = SubscriptionTally()
        for sub in subscriptions:
            tally.total += 1
            if sub.status == SubscriptionStatus.ACTIVE:
                tally.active += 1
            elif sub.status == SubscriptionStatus.TRIALING:
                tally.trialing += 1
            elif sub.status == SubscriptionStatus.PAST_DUE:
                tally.past_due += 1
            elif sub.status == SubscriptionStatus.CANCELED:
                tally.canceled += 1
            elif sub.status == SubscriptionStatus.INCOMPLETE:
                tally.incomplete += 1

            if sub.status != SubscriptionStatus.ACTIVE:
                continue
            plan = self.matcher.match(sub)
            if plan == PRO:
                tally.pro += 1
            elif plan == PREMIUM:
                tally.premium += 1
        return tally

    async def sum_invoices(self, start: datetime, end: datetime) -> InvoiceSum:
        """Total and count of paid invoices created within [start, end]."""
        created_gte, created_lte = to_unix(start), to_unix(end)
        invoices = await fetch_all(
            lambda cursor: self.client.list_invoices(
                status="paid",
                created_gte=created_gte,
                created_lte=created_lte,
                starting_after=cursor,
            )
        )
        return InvoiceSum(
            total_cents=sum(invoice.total or 0 for invoice in invoices),
            count=len(invoices),
        )

    async def revenue_trend(self, now: datetime, months: int = TREND_MONTHS) -> list[TrendPoint]:
        """Paid invoice totals per month, oldest first, ending with the current month."""
        points = []
        for months_back in range(months - 1, -1, -1):
            start, end = month_window(now, months_back)
            invoices = await self.sum_invoices(start, end)
            points.append(TrendPoint(start.strftime("%b"), invoices.total_cents, invoices.count))
        return points

    def _recent_row(self, sub: Subscription) -> RecentSubscription:
        price = sub.price
        plan = self.matcher.match(sub)
        return RecentSubscription(
            id=sub.id,
            user_name=sub.customer_name,
            user_email=sub.customer_email,
            tier=TIER_LABELS.get(plan, "Other"),
            period=(price.recurring_interval if price else None) or "—",
            amount_cents=(price.unit_amount if price else None) or 0,
            status=sub.status.value,
        )

    async def recent_subscriptions(self, limit: int = RECENT_LIMIT) -> list[RecentSubscription]:
        page = await self.client.list_subscriptions(
            status="all", limit=limit, expand_customer=True
        )
        return [self._recent_row(sub) for sub in page.data[:limit]]

    async def compute_dashboard(self, now: datetime | None = None) -> DashboardMetrics:
        """
        Aggregate the dashboard.

        Args:
            now: Reference time; month and day windows are taken in UTC

        Returns:
            DashboardMetrics

        Raises:
            MetricsAggregationError: If any listing pass fails
        """
        now = now or datetime.now(timezone.utc)
        try:
            tally = await self.tally_subscriptions()
            trend = await self.revenue_trend(now, max(TREND_MONTHS, QUARTER_MONTHS))
            current = InvoiceSum(trend[-1].revenue_cents, trend[-1].invoice_count)
            previous = InvoiceSum(trend[-2].revenue_cents, trend[-2].invoice_count)
            today = await self.sum_invoices(*day_window(now))
            recent = await self.recent_subscriptions()
        except Exception as e:
            logger.error("dashboard_aggregation_failed", error=str(e), exc_info=True)
            raise MetricsAggregationError(
                "Stripe aggregation failed",
                details={"error": str(e)},
                original_error=e,
            ) from e

        metrics = DashboardMetrics(
            subscriptions=tally,
            current_month=current,
            last_month=previous,
            growth_percent=growth_percent(current.total_cents, previous.total_cents),
            trend=trend[-TREND_MONTHS:],
            traffic_today=today.count,
            traffic_monthly=current.count,
            traffic_quarterly=sum(point.invoice_count for point in trend[-QUARTER_MONTHS:]),
            premium=TierCount(total=tally.premium),
            pro=TierCount(total=tally.pro),
            recent_subscriptions=recent,
        )
        logger.info(
            "dashboard_aggregated",
            subscriptions=tally.total,
            month_revenue_cents=current.total_cents,
            last_month_revenue_cents=previous.total_cents,
            recent_subscriptions=len(recent),
        )
        return metrics

    @staticmethod
    def demo() -> DashboardMetrics:
        """Static payload served when no Stripe key is configured."""
        months = ["Apr", "May", "Jun", "Jul", "Aug", "Sep"]
        return DashboardMetrics(
            subscriptions=SubscriptionTally(
                total=10, active=7, trialing=2, past_due=1, canceled=0, incomplete=0
            ),
            current_month=InvoiceSum(total_cents=8240000, count=12),
            last_month=InvoiceSum(total_cents=7000000, count=0),
            growth_percent=12.4,
            trend=[
                TrendPoint(month, (7000 + i * 2000) * 100, 5000 + i * 5000)
                for i, month in enumerate(months)
            ],
            traffic_today=1280,
            traffic_monthly=32140,
            traffic_quarterly=91520,
            premium=TierCount(total=3, new=1, churn=0),
            pro=TierCount(total=5, new=2, churn=1),
            recent_subscriptions=[
                RecentSubscription(
                    id="SUB-0012",
                    user_name="Olivia Rhye",
                    tier="Premium",
                    period="Monthly",
                    amount_cents=2900,
                    status="active",
                ),
                RecentSubscription(
                    id="SUB-0013",
                    user_name="James Doe",
                    tier="Pro",
                    period="Quarterly",
                    amount_cents=5900,
                    status="past_due",
                ),
            ],
            users_total=42,
            users_new_this_month=5,
            message=DEMO_MESSAGE,
        )
