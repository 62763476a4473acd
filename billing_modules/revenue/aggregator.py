"""
Revenue aggregator (pure).

Every aggregate is computed over subscription-classified transactions
only; excluded transactions contribute nothing to any figure.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from billing_kernel.db.types import round_money
from billing_modules.revenue.models import (
    ClassifiedTransaction,
    PlanAnalysis,
    PlanRevenue,
    RevenueSummary,
)
from billing_modules.subscriptions.models import BillingInterval

ZERO = Decimal("0")
_PERCENT_PLACES = 2
_MONTHS_PER_YEAR = Decimal("12")


def revenue_only(transactions: Iterable[ClassifiedTransaction]) -> list[ClassifiedTransaction]:
    return [t for t in transactions if t.is_revenue]


def summarize(
    transactions: Iterable[ClassifiedTransaction],
    decimal_places: int = 0,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> RevenueSummary:
    """
    Totals, average and fee percentage of the subscription transactions.

    ``total_amount - total_fees == net_amount`` holds exactly.
    """
    revenue = revenue_only(transactions)
    total = sum((t.amount for t in revenue), ZERO)
    fees = sum((t.fee for t in revenue), ZERO)
    count = len(revenue)
    average = round_money(total / count, decimal_places) if count else ZERO
    fee_percentage = (
        round_money(fees / total * 100, _PERCENT_PLACES) if total else ZERO
    )
    return RevenueSummary(
        total_amount=total,
        total_fees=fees,
        net_amount=total - fees,
        transaction_count=count,
        average_amount=average,
        fee_percentage=fee_percentage,
        period_start=period_start,
        period_end=period_end,
    )


def group_by_plan(
    transactions: Iterable[ClassifiedTransaction],
    decimal_places: int = 0,
) -> tuple[PlanRevenue, ...]:
    """Per-plan summaries, largest total first (ties broken by plan key)."""
    groups: dict[str, list[ClassifiedTransaction]] = {}
    for t in revenue_only(transactions):
        groups.setdefault(t.plan_key, []).append(t)

    breakdown = [
        PlanRevenue(
            plan_key=key,
            plan_label=items[0].plan_label,
            interval=items[0].interval,
            summary=summarize(items, decimal_places),
        )
        for key, items in groups.items()
    ]
    breakdown.sort(key=lambda p: (-p.summary.total_amount, p.plan_key))
    return tuple(breakdown)


def analyze_by_plan(
    transactions: Iterable[ClassifiedTransaction],
    decimal_places: int = 0,
) -> PlanAnalysis:
    breakdown = group_by_plan(transactions, decimal_places)
    return PlanAnalysis(breakdown=breakdown, top_plan=breakdown[0] if breakdown else None)


def monthly_recurring_revenue(
    transactions: Iterable[ClassifiedTransaction],
    decimal_places: int = 0,
) -> Decimal:
    """Monthly-interval revenue at face value plus yearly revenue / 12."""
    monthly = ZERO
    yearly = ZERO
    for t in revenue_only(transactions):
        if t.interval == BillingInterval.MONTH:
            monthly += t.amount
        elif t.interval == BillingInterval.YEAR:
            yearly += t.amount
    return round_money(monthly + yearly / _MONTHS_PER_YEAR, decimal_places)


def calculate_growth_rate(current: Decimal, previous: Decimal) -> Decimal:
    """
    Percentage growth from ``previous`` to ``current``.

    A zero baseline yields 100 when there is any current revenue, else 0.
    """
    if previous == 0:
        return Decimal("100") if current > 0 else ZERO
    return round_money((current - previous) / previous * 100, _PERCENT_PLACES)
