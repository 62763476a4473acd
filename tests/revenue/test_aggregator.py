"""Tests for revenue aggregation over classified transactions."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_modules.revenue.aggregator import (
    analyze_by_plan,
    calculate_growth_rate,
    group_by_plan,
    monthly_recurring_revenue,
    summarize,
)
from billing_modules.revenue.classifier import classify_transactions
from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.models import RawTransaction

CREATED = datetime(2024, 3, 10, tzinfo=timezone.utc)


def _tx(tx_id, amount, plan_id=None, **kwargs):
    metadata = {"plan_id": plan_id} if plan_id else kwargs.pop("metadata", {})
    return RawTransaction(
        id=tx_id,
        amount=Decimal(amount),
        currency="jpy",
        status="succeeded",
        created_at=CREATED,
        metadata=metadata,
        **kwargs,
    )


@pytest.fixture
def classified():
    config = RevenueConfig.with_defaults()
    return classify_transactions(
        [
            _tx("pi_1", "500", "monthly"),
            _tx("pi_2", "500", "monthly"),
            _tx("pi_3", "12000", "yearly"),
            _tx("pi_4", "3000", "business"),
            _tx("pi_5", "9999", "monthly", refunded=True),
            _tx("pi_6", "4200", metadata={"product_type": "goods"}),
        ],
        config,
    )


class TestSummarize:
    def test_only_subscription_transactions_count(self, classified):
        summary = summarize(classified)

        assert summary.total_amount == Decimal("16000")
        assert summary.transaction_count == 4
        # 18 + 18 + 432 + 108
        assert summary.total_fees == Decimal("576")
        assert summary.net_amount == Decimal("15424")
        assert summary.average_amount == Decimal("4000")
        assert summary.fee_percentage == Decimal("3.60")

    def test_empty(self):
        summary = summarize([])
        assert summary.total_amount == Decimal("0")
        assert summary.average_amount == Decimal("0")
        assert summary.fee_percentage == Decimal("0")

    def test_to_dict_keys(self, classified):
        assert set(summarize(classified).to_dict()) == {
            "total_amount", "total_fees", "net_amount", "transaction_count",
            "average_amount", "fee_percentage", "period_start", "period_end",
        }


class TestByPlan:
    def test_sorted_by_total_then_key(self, classified):
        breakdown = group_by_plan(classified)

        assert [p.plan_key for p in breakdown] == ["yearly", "business", "monthly"]
        monthly = breakdown[2]
        assert monthly.summary.transaction_count == 2
        assert monthly.summary.total_amount == Decimal("1000")
        assert monthly.plan_label == "Monthly plan"

    def test_totals_add_up(self, classified):
        breakdown = group_by_plan(classified)
        assert sum(p.summary.total_amount for p in breakdown) == summarize(classified).total_amount

    def test_top_plan(self, classified):
        analysis = analyze_by_plan(classified)
        assert analysis.top_plan.plan_key == "yearly"

    def test_no_revenue_has_no_top_plan(self):
        analysis = analyze_by_plan([])
        assert analysis.breakdown == ()
        assert analysis.top_plan is None


class TestMrr:
    def test_yearly_spread_over_twelve_months(self, classified):
        # 500 + 500 + 3000 monthly, 12000 / 12 yearly
        assert monthly_recurring_revenue(classified) == Decimal("5000")


class TestGrowthRate:
    @pytest.mark.parametrize(
        "current, previous, expected",
        [
            ("1500", "1000", "50.00"),
            ("500", "1000", "-50.00"),
            ("1000", "0", "100"),
            ("0", "0", "0"),
            ("1000", "3000", "-66.67"),
        ],
    )
    def test_growth(self, current, previous, expected):
        assert calculate_growth_rate(Decimal(current), Decimal(previous)) == Decimal(expected)
