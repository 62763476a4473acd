"""
Revenue Domain Models.

RawTransaction is what the processor reports; ClassifiedTransaction is a
pure derivation of it under the current rules.  Neither is persisted: a
reconciliation run always re-fetches and re-classifies, so rule changes
apply retroactively.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from billing_modules.subscriptions.models import BillingInterval


class TransactionCategory(str, Enum):
    SUBSCRIPTION = "subscription"
    EXCLUDED_REFUND = "excluded_refund"
    EXCLUDED_NON_SUBSCRIPTION = "excluded_non_subscription"


@dataclass(frozen=True)
class RawTransaction:
    """Immutable processor transaction (amounts in major units)."""

    id: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
    description: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    refunded: bool = False
    refunded_amount: Decimal = Decimal("0")
    customer_email: str | None = None
    processor_fee: Decimal | None = None


@dataclass(frozen=True)
class ClassifiedTransaction:
    raw: RawTransaction
    category: TransactionCategory
    reason: str
    plan_key: str | None = None
    plan_label: str | None = None
    interval: BillingInterval | None = None
    fee: Decimal = Decimal("0")
    net: Decimal = Decimal("0")

    @property
    def is_revenue(self) -> bool:
        return self.category == TransactionCategory.SUBSCRIPTION

    @property
    def amount(self) -> Decimal:
        return self.raw.amount


@dataclass(frozen=True)
class RevenueSummary:
    total_amount: Decimal
    total_fees: Decimal
    net_amount: Decimal
    transaction_count: int
    average_amount: Decimal
    fee_percentage: Decimal
    period_start: datetime | None = None
    period_end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_amount": self.total_amount,
            "total_fees": self.total_fees,
            "net_amount": self.net_amount,
            "transaction_count": self.transaction_count,
            "average_amount": self.average_amount,
            "fee_percentage": self.fee_percentage,
            "period_start": self.period_start,
            "period_end": self.period_end,
        }


@dataclass(frozen=True)
class PlanRevenue:
    plan_key: str
    plan_label: str
    interval: BillingInterval | None
    summary: RevenueSummary


@dataclass(frozen=True)
class PlanAnalysis:
    breakdown: tuple[PlanRevenue, ...]
    top_plan: PlanRevenue | None


@dataclass(frozen=True)
class FetchResult:
    """
    Output of one fetch run.

    ``complete=False`` means the run stopped early after exhausting retries;
    ``resume_cursor`` is the last fully processed page boundary.
    """

    transactions: tuple[RawTransaction, ...]
    complete: bool
    resume_cursor: str | None = None
    pages_fetched: int = 0
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class RevenueReport:
    year: int | None
    month: int | None
    period_start: datetime
    period_end: datetime
    summary: RevenueSummary
    by_plan: tuple[PlanRevenue, ...]
    monthly_recurring_revenue: Decimal
    transactions: tuple[ClassifiedTransaction, ...]
    top_plan: PlanRevenue | None = None
    excluded_refund_count: int = 0
    excluded_refund_amount: Decimal = Decimal("0")
    excluded_non_subscription_count: int = 0
    excluded_non_subscription_amount: Decimal = Decimal("0")
    complete: bool = True
    resume_cursor: str | None = None
    fetch_errors: tuple[str, ...] = ()

    @property
    def total_revenue(self) -> Decimal:
        return self.summary.total_amount

    @property
    def total_fees(self) -> Decimal:
        return self.summary.total_fees


@dataclass(frozen=True)
class YearOverYearComparison:
    current: RevenueSummary
    previous: RevenueSummary
    growth_rate: Decimal
    complete: bool
