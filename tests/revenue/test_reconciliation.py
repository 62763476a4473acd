"""Tests for RevenueReconciliationService: monthly reports and year-over-year."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.fetcher import ChargeInfo, TransactionFetcher
from billing_modules.revenue.service import RevenueReconciliationService, month_range
from tests.conftest import FakeProcessorClient, payment_intent, transient

MARCH = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _service(client, **config) -> RevenueReconciliationService:
    config = RevenueConfig(**config) if config else RevenueConfig.with_defaults()
    return RevenueReconciliationService(
        TransactionFetcher(client, config, sleep=lambda _: None), config
    )


@pytest.fixture
def march_client():
    return FakeProcessorClient(
        [
            payment_intent("pi_m1", 500, MARCH + timedelta(days=1), {"plan_id": "monthly"}),
            payment_intent("pi_y1", 12000, MARCH + timedelta(days=2), {"plan_id": "yearly"}),
            payment_intent("pi_refund", 500, MARCH + timedelta(days=3), {"plan_id": "monthly"}),
            payment_intent("pi_goods", 1500, MARCH + timedelta(days=4),
                           description="OneTap Seal"),
            payment_intent("pi_april", 500, datetime(2024, 4, 1, tzinfo=timezone.utc),
                           {"plan_id": "monthly"}),
        ],
        charges={"pi_refund": ChargeInfo(refunded=True, amount_refunded=500)},
    )


class TestMonthRange:
    def test_regular_and_december(self):
        assert month_range(2024, 3, timezone.utc) == (
            MARCH, datetime(2024, 4, 1, tzinfo=timezone.utc)
        )
        start, end = month_range(2024, 12, timezone.utc)
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_local_timezone_boundaries(self):
        tokyo = ZoneInfo("Asia/Tokyo")
        start, _ = month_range(2024, 3, tokyo)
        assert start.astimezone(timezone.utc) == datetime(2024, 2, 29, 15, tzinfo=timezone.utc)

    @pytest.mark.parametrize("month", [0, 13])
    def test_invalid_month(self, month):
        with pytest.raises(ValueError):
            month_range(2024, month, timezone.utc)


class TestReconcileMonth:
    def test_report_totals(self, march_client):
        report = _service(march_client).reconcile_month(2024, 3)

        assert report.complete
        assert report.year == 2024 and report.month == 3
        assert report.total_revenue == Decimal("12500")
        assert report.total_fees == Decimal("450")
        assert report.summary.net_amount == Decimal("12050")
        assert report.excluded_refund_count == 1
        assert report.excluded_refund_amount == Decimal("500")
        assert report.excluded_non_subscription_count == 1
        assert report.excluded_non_subscription_amount == Decimal("1500")
        assert [p.plan_key for p in report.by_plan] == ["yearly", "monthly"]
        assert report.monthly_recurring_revenue == Decimal("1500")
        assert len(report.transactions) == 4

    def test_rerun_gives_identical_totals(self, march_client):
        service = _service(march_client)
        first = service.reconcile_month(2024, 3)
        second = service.reconcile_month(2024, 3)
        assert first.summary == second.summary

    def test_degraded_report_is_flagged(self, march_client, captured_logs):
        march_client.errors = {0: transient(), 1: transient()}

        report = _service(march_client, max_attempts=2).reconcile_month(2024, 3)

        assert not report.complete
        assert report.total_revenue == Decimal("0")
        assert report.fetch_errors
        assert any(r["message"] == "revenue_report_degraded" for r in captured_logs())


class TestYearOverYear:
    def test_growth_against_previous_year(self, march_client):
        march_client.payment_intents.append(
            payment_intent("pi_2023", 10000, datetime(2023, 3, 5, tzinfo=timezone.utc),
                           {"plan_id": "yearly"})
        )

        comparison = _service(march_client).compare_with_previous_year(2024, 3)

        assert comparison.current.total_amount == Decimal("12500")
        assert comparison.previous.total_amount == Decimal("10000")
        assert comparison.growth_rate == Decimal("25.00")
        assert comparison.complete

    def test_no_previous_revenue(self, march_client):
        comparison = _service(march_client).compare_with_previous_year(2024, 3)
        assert comparison.growth_rate == Decimal("100")
