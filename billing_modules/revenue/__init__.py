"""Revenue reconciliation: fetch, classify, aggregate."""

from billing_modules.revenue.models import (
    ClassifiedTransaction,
    RawTransaction,
    RevenueReport,
    RevenueSummary,
    TransactionCategory,
)

__all__ = [
    "ClassifiedTransaction",
    "RawTransaction",
    "RevenueReport",
    "RevenueSummary",
    "TransactionCategory",
]
