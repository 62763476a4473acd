"""
Collaborator interfaces feeding the allocation engine, with SQL-backed
implementations over the expense and adjustment tables.
"""

from datetime import date
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_modules.allocation.models import (
    APPROVED_EXPENSE_STATUSES,
    AdjustmentStatus,
    ApprovedAdjustment,
)
from billing_modules.allocation.orm import ExpenseRecordModel, RevenueShareAdjustmentModel


class ExpenseLedger(Protocol):
    def operating_expenses(self, year: int, month: int) -> Decimal:
        """Sum of approved pooled operating expenses for the month."""
        ...

    def reimbursements(self, contractor_key: str, year: int, month: int) -> Decimal:
        """Sum of the contractor's approved reimbursable expenses."""
        ...


class AdjustmentSource(Protocol):
    def approved_adjustment(
        self, contractor_key: str, year: int, month: int,
    ) -> ApprovedAdjustment | None:
        ...


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


class SqlExpenseLedger:
    def __init__(self, session: Session):
        self._session = session

    def operating_expenses(self, year: int, month: int) -> Decimal:
        return self._sum(year, month, ExpenseRecordModel.contractor_key.is_(None))

    def reimbursements(self, contractor_key: str, year: int, month: int) -> Decimal:
        return self._sum(year, month, ExpenseRecordModel.contractor_key == contractor_key)

    def _sum(self, year: int, month: int, condition) -> Decimal:
        start, end = _month_bounds(year, month)
        amounts = self._session.execute(
            select(ExpenseRecordModel.amount).where(
                ExpenseRecordModel.record_date >= start,
                ExpenseRecordModel.record_date < end,
                ExpenseRecordModel.approval_status.in_(APPROVED_EXPENSE_STATUSES),
                condition,
            )
        ).scalars().all()
        return sum((Decimal(a) for a in amounts), Decimal("0"))


class SqlAdjustmentSource:
    def __init__(self, session: Session):
        self._session = session

    def approved_adjustment(
        self, contractor_key: str, year: int, month: int,
    ) -> ApprovedAdjustment | None:
        row = self._session.execute(
            select(RevenueShareAdjustmentModel).where(
                RevenueShareAdjustmentModel.contractor_key == contractor_key,
                RevenueShareAdjustmentModel.year == year,
                RevenueShareAdjustmentModel.month == month,
                RevenueShareAdjustmentModel.status == AdjustmentStatus.APPROVED.value,
            )
        ).scalar_one_or_none()
        return row.to_approved() if row else None
