"""
Module: billing_modules.settlement.orm
Responsibility: ORM persistence for monthly settlement snapshots and their
    per-contractor share rows.

Architecture position: Modules > Settlement.  Imports from billing_kernel.

Invariants enforced:
    - UNIQUE(year, month): one settlement per month; concurrent creators
      collide in the database.
    - Status moves forward one step at a time (draft -> finalized -> paid);
      the ``status`` validator rejects regressions and skips before flush.
    - Shares are owned by their settlement (delete-orphan cascade).

Failure modes:
    - InvalidSettlementTransitionError on a backwards or skipping status
      assignment.
    - IntegrityError on a duplicate (year, month).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from billing_kernel.db.base import TrackedBase
from billing_kernel.exceptions import InvalidSettlementTransitionError
from billing_modules.settlement.models import (
    STATUS_ORDER,
    SettlementShareSnapshot,
    SettlementSnapshot,
    SettlementStatus,
)


class MonthlySettlementModel(TrackedBase):
    """Locked snapshot of one month's allocation."""

    __tablename__ = "monthly_settlements"

    __table_args__ = (
        UniqueConstraint("year", "month", name="uq_settlement_period"),
        CheckConstraint(
            "status IN ('draft', 'finalized', 'paid')",
            name="ck_settlement_status",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_settlement_month"),
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    total_revenue: Mapped[Decimal] = mapped_column(nullable=False)
    total_fees: Mapped[Decimal] = mapped_column(nullable=False)
    gross_profit: Mapped[Decimal] = mapped_column(nullable=False)
    total_expenses: Mapped[Decimal] = mapped_column(nullable=False)
    net_profit: Mapped[Decimal] = mapped_column(nullable=False)
    contractor_share_pool: Mapped[Decimal] = mapped_column(nullable=False)
    company_share: Mapped[Decimal] = mapped_column(nullable=False)
    unallocated_pool: Mapped[Decimal] = mapped_column(nullable=False)
    total_contractor_share: Mapped[Decimal] = mapped_column(nullable=False)

    finalized_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    shares: Mapped[list[SettlementShareModel]] = relationship(
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementShareModel.contractor_key",
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        if value not in STATUS_ORDER:
            raise InvalidSettlementTransitionError(str(self.status), value)
        current = self.status
        if current is not None and current != value:
            if STATUS_ORDER[value] != STATUS_ORDER[current] + 1:
                raise InvalidSettlementTransitionError(current, value)
        return value

    def to_dto(self) -> SettlementSnapshot:
        return SettlementSnapshot(
            id=self.id,
            year=self.year,
            month=self.month,
            status=SettlementStatus(self.status),
            total_revenue=self.total_revenue,
            total_fees=self.total_fees,
            gross_profit=self.gross_profit,
            total_expenses=self.total_expenses,
            net_profit=self.net_profit,
            contractor_share_pool=self.contractor_share_pool,
            company_share=self.company_share,
            unallocated_pool=self.unallocated_pool,
            total_contractor_share=self.total_contractor_share,
            shares=tuple(s.to_dto() for s in self.shares),
            finalized_by_id=self.finalized_by_id,
            finalized_at=self.finalized_at,
            paid_by_id=self.paid_by_id,
            paid_at=self.paid_at,
        )

    def __repr__(self) -> str:
        return f"<MonthlySettlement {self.year}-{self.month:02d} {self.status}>"


class SettlementShareModel(TrackedBase):
    """One contractor's line of a settlement."""

    __tablename__ = "settlement_shares"

    __table_args__ = (
        UniqueConstraint("settlement_id", "contractor_key", name="uq_settlement_share"),
    )

    settlement_id: Mapped[UUID] = mapped_column(
        ForeignKey("monthly_settlements.id", ondelete="CASCADE"), nullable=False
    )
    contractor_key: Mapped[str] = mapped_column(String(50), nullable=False)
    percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    allocation: Mapped[Decimal] = mapped_column(nullable=False)
    reimbursement: Mapped[Decimal] = mapped_column(nullable=False)
    total_payment: Mapped[Decimal] = mapped_column(nullable=False)
    adjusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adjustment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    settlement: Mapped[MonthlySettlementModel] = relationship(back_populates="shares")

    def to_dto(self) -> SettlementShareSnapshot:
        return SettlementShareSnapshot(
            contractor_key=self.contractor_key,
            percent=self.percent,
            allocation=self.allocation,
            reimbursement=self.reimbursement,
            total_payment=self.total_payment,
            adjusted=self.adjusted,
            adjustment_reason=self.adjustment_reason,
        )
