"""
Module: billing_modules.revenue.service
Responsibility: Revenue reconciliation for a month or arbitrary range:
    fetch -> classify -> aggregate into a RevenueReport.
Architecture position: Modules > Revenue > Services.  No database access;
    safe to run concurrently for different months.

Invariants enforced:
    - total revenue is the sum over subscription-classified transactions
      only; refunds and non-subscription purchases are reported separately.
    - A partial fetch yields a report marked ``complete=False``; it is
      never silently presented as complete.
"""

from datetime import datetime
from decimal import Decimal

from billing_kernel.logging_config import get_logger
from billing_modules.revenue.aggregator import (
    ZERO,
    analyze_by_plan,
    calculate_growth_rate,
    monthly_recurring_revenue,
    summarize,
)
from billing_modules.revenue.classifier import classify_transactions
from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.fetcher import TransactionFetcher
from billing_modules.revenue.models import (
    RevenueReport,
    TransactionCategory,
    YearOverYearComparison,
)

logger = get_logger("services.revenue")


def month_range(year: int, month: int, tzinfo) -> tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month)."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
    start = datetime(year, month, 1, tzinfo=tzinfo)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tzinfo)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tzinfo)
    return start, end


class RevenueReconciliationService:
    """Builds revenue reports from freshly fetched processor data."""

    def __init__(self, fetcher: TransactionFetcher, config: RevenueConfig):
        self._fetcher = fetcher
        self._config = config

    def reconcile_month(self, year: int, month: int) -> RevenueReport:
        start, end = month_range(year, month, self._config.tzinfo)
        return self.reconcile_range(start, end, year=year, month=month)

    def reconcile_range(
        self,
        start: datetime,
        end: datetime,
        year: int | None = None,
        month: int | None = None,
        resume_cursor: str | None = None,
    ) -> RevenueReport:
        fetched = self._fetcher.fetch(start, end, resume_cursor=resume_cursor)
        classified = classify_transactions(fetched.transactions, self._config)
        places = self._config.decimal_places
        plans = analyze_by_plan(classified, places)

        refunds = [t for t in classified if t.category == TransactionCategory.EXCLUDED_REFUND]
        others = [
            t for t in classified
            if t.category == TransactionCategory.EXCLUDED_NON_SUBSCRIPTION
        ]

        report = RevenueReport(
            year=year,
            month=month,
            period_start=start,
            period_end=end,
            summary=summarize(classified, places, start, end),
            by_plan=plans.breakdown,
            monthly_recurring_revenue=monthly_recurring_revenue(classified, places),
            transactions=classified,
            top_plan=plans.top_plan,
            excluded_refund_count=len(refunds),
            excluded_refund_amount=sum((t.amount for t in refunds), ZERO),
            excluded_non_subscription_count=len(others),
            excluded_non_subscription_amount=sum((t.amount for t in others), ZERO),
            complete=fetched.complete,
            resume_cursor=fetched.resume_cursor,
            fetch_errors=fetched.errors,
        )

        logger.info(
            "revenue_reconciled",
            extra={
                "year": year,
                "month": month,
                "total_revenue": report.summary.total_amount,
                "total_fees": report.summary.total_fees,
                "subscription_count": report.summary.transaction_count,
                "excluded_refund_count": report.excluded_refund_count,
                "excluded_non_subscription_count": report.excluded_non_subscription_count,
                "complete": report.complete,
            },
        )
        if not report.complete:
            logger.warning(
                "revenue_report_degraded",
                extra={"year": year, "month": month, "errors": list(report.fetch_errors)},
            )
        return report

    def compare_with_previous_year(
        self, year: int, month: int, current: RevenueReport | None = None,
    ) -> YearOverYearComparison:
        """
        Growth against the same month a year earlier.

        Pass ``current`` to reuse a report that was already fetched.
        """
        current = current or self.reconcile_month(year, month)
        previous = self.reconcile_month(year - 1, month)
        growth: Decimal = calculate_growth_rate(
            current.summary.total_amount, previous.summary.total_amount
        )
        return YearOverYearComparison(
            current=current.summary,
            previous=previous.summary,
            growth_rate=growth,
            complete=current.complete and previous.complete,
        )
