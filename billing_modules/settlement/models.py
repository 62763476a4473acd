"""Settlement Domain Models."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class SettlementStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    PAID = "paid"


# Position in the lifecycle; status may only move forward one step.
STATUS_ORDER: dict[str, int] = {
    SettlementStatus.DRAFT.value: 0,
    SettlementStatus.FINALIZED.value: 1,
    SettlementStatus.PAID.value: 2,
}


@dataclass(frozen=True)
class SettlementShareSnapshot:
    contractor_key: str
    percent: Decimal
    allocation: Decimal
    reimbursement: Decimal
    total_payment: Decimal
    adjusted: bool
    adjustment_reason: str | None


@dataclass(frozen=True)
class SettlementSnapshot:
    id: UUID
    year: int
    month: int
    status: SettlementStatus
    total_revenue: Decimal
    total_fees: Decimal
    gross_profit: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    contractor_share_pool: Decimal
    company_share: Decimal
    unallocated_pool: Decimal
    total_contractor_share: Decimal
    shares: tuple[SettlementShareSnapshot, ...]
    finalized_by_id: UUID | None
    finalized_at: datetime | None
    paid_by_id: UUID | None
    paid_at: datetime | None

    @property
    def can_finalize(self) -> bool:
        return self.status == SettlementStatus.DRAFT

    @property
    def can_mark_paid(self) -> bool:
        return self.status == SettlementStatus.FINALIZED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "year": self.year,
            "month": self.month,
            "status": self.status.value,
            "total_revenue": self.total_revenue,
            "total_fees": self.total_fees,
            "gross_profit": self.gross_profit,
            "total_expenses": self.total_expenses,
            "net_profit": self.net_profit,
            "contractor_share_pool": self.contractor_share_pool,
            "company_share": self.company_share,
            "unallocated_pool": self.unallocated_pool,
            "total_contractor_share": self.total_contractor_share,
            "shares": [
                {
                    "contractor_key": s.contractor_key,
                    "percent": s.percent,
                    "allocation": s.allocation,
                    "reimbursement": s.reimbursement,
                    "total_payment": s.total_payment,
                    "adjusted": s.adjusted,
                    "adjustment_reason": s.adjustment_reason,
                }
                for s in self.shares
            ],
            "finalized_by_id": self.finalized_by_id,
            "finalized_at": self.finalized_at,
            "paid_by_id": self.paid_by_id,
            "paid_at": self.paid_at,
        }
