"""
Module: billing_modules.allocation.orm
Responsibility: ORM persistence for revenue-share adjustments and the
    expense records behind the expense ledger.

Architecture position: Modules > Allocation.  Imports from billing_kernel.db.

Invariants enforced:
    - At most one approved adjustment per (contractor, year, month):
      partial unique index WHERE status = 'approved'.
    - adjusted_percent >= 0, month in 1..12.
    - Expense approval status limited by check constraint; amounts >= 0.

Failure modes:
    - IntegrityError on a second approved adjustment for the same month.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_modules.allocation.models import AdjustmentStatus, ApprovedAdjustment


class RevenueShareAdjustmentModel(TrackedBase):
    """Proposal to change one contractor's percentage for one month."""

    __tablename__ = "revenue_share_adjustments"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_adjustment_status",
        ),
        CheckConstraint(
            "adjustment_type IN ('self_reduction', 'admin_proposal', 'peer_proposal')",
            name="ck_adjustment_type",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_adjustment_month"),
        CheckConstraint("adjusted_percent >= 0", name="ck_adjustment_percent"),
        Index(
            "uq_adjustment_approved_per_month",
            "contractor_key",
            "year",
            "month",
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
        Index("ix_adjustment_period", "year", "month"),
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    contractor_key: Mapped[str] = mapped_column(String(50), nullable=False)
    original_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    adjusted_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(String(30), nullable=False)
    proposer_id: Mapped[UUID] = mapped_column(nullable=False)
    approver_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AdjustmentStatus.PENDING.value
    )
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_approved(self) -> ApprovedAdjustment:
        return ApprovedAdjustment(
            contractor_key=self.contractor_key,
            original_percent=Decimal(self.original_percent),
            adjusted_percent=Decimal(self.adjusted_percent),
            reason=self.reason,
            adjustment_id=self.id,
        )


class ExpenseRecordModel(TrackedBase):
    """
    Recorded expense.  ``contractor_key`` NULL means a pooled operating
    expense; set means a reimbursement owed to that contractor.
    """

    __tablename__ = "expense_records"

    __table_args__ = (
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'auto_approved', 'rejected')",
            name="ck_expense_approval_status",
        ),
        CheckConstraint("amount >= 0", name="ck_expense_amount"),
        Index("ix_expense_record_date", "record_date"),
        Index("ix_expense_contractor", "contractor_key"),
    )

    record_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False)
    contractor_key: Mapped[str | None] = mapped_column(String(50), nullable=True)
