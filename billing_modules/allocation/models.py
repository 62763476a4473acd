"""
Allocation Domain Models.

Every intermediate figure of a month's profit split is carried on
ProfitAllocation so an auditor can re-derive the payout without asking
the processor again.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AdjustmentType(str, Enum):
    SELF_REDUCTION = "self_reduction"
    ADMIN_PROPOSAL = "admin_proposal"
    PEER_PROPOSAL = "peer_proposal"


class ExpenseApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    AUTO_APPROVED = "auto_approved"
    REJECTED = "rejected"


APPROVED_EXPENSE_STATUSES = (
    ExpenseApprovalStatus.APPROVED.value,
    ExpenseApprovalStatus.AUTO_APPROVED.value,
)


@dataclass(frozen=True)
class ContractorDefinition:
    key: str
    display_name: str
    default_percent: Decimal


@dataclass(frozen=True)
class ApprovedAdjustment:
    """The one approved percentage override for a contractor and month."""

    contractor_key: str
    original_percent: Decimal
    adjusted_percent: Decimal
    reason: str
    adjustment_id: UUID | None = None


@dataclass(frozen=True)
class AllocationInputs:
    year: int
    month: int
    total_revenue: Decimal
    total_fees: Decimal
    total_expenses: Decimal
    contractors: tuple[ContractorDefinition, ...]
    adjustments: dict[str, ApprovedAdjustment] = field(default_factory=dict)
    reimbursements: dict[str, Decimal] = field(default_factory=dict)
    revenue_complete: bool = True
    fetch_error_count: int = 0


@dataclass(frozen=True)
class ContractorAllocation:
    contractor_key: str
    display_name: str
    default_percent: Decimal
    effective_percent: Decimal
    allocation: Decimal
    reimbursement: Decimal
    total_payment: Decimal
    adjusted: bool = False
    adjustment_reason: str | None = None
    adjustment_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractor_key": self.contractor_key,
            "display_name": self.display_name,
            "default_percent": self.default_percent,
            "effective_percent": self.effective_percent,
            "allocation": self.allocation,
            "reimbursement": self.reimbursement,
            "total_payment": self.total_payment,
            "adjusted": self.adjusted,
            "adjustment_reason": self.adjustment_reason,
            "adjustment_id": self.adjustment_id,
        }


@dataclass(frozen=True)
class ProfitAllocation:
    """
    A month's profit split.

    Identities (exact, no drift):
        gross_profit = total_revenue - total_fees
        net_profit = gross_profit - total_expenses
        company_share = net_profit - contractor_share_pool
        contractor_share_pool = total_contractor_share + unallocated_pool
        company_share + unallocated_pool + total_contractor_share = net_profit
    """

    year: int
    month: int
    total_revenue: Decimal
    total_fees: Decimal
    gross_profit: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    pool_percent: Decimal
    contractor_share_pool: Decimal
    company_share: Decimal
    unallocated_pool: Decimal
    total_contractor_share: Decimal
    total_reimbursements: Decimal
    contractors: tuple[ContractorAllocation, ...]
    revenue_complete: bool = True
    fetch_error_count: int = 0

    @property
    def company_total(self) -> Decimal:
        """Company share plus whatever the contractors did not take."""
        return self.company_share + self.unallocated_pool

    @property
    def has_adjustments(self) -> bool:
        return any(c.adjusted for c in self.contractors)

    def for_contractor(self, key: str) -> ContractorAllocation:
        for c in self.contractors:
            if c.contractor_key == key:
                return c
        raise KeyError(key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "total_revenue": self.total_revenue,
            "total_fees": self.total_fees,
            "gross_profit": self.gross_profit,
            "total_expenses": self.total_expenses,
            "net_profit": self.net_profit,
            "pool_percent": self.pool_percent,
            "contractor_share_pool": self.contractor_share_pool,
            "company_share": self.company_share,
            "unallocated_pool": self.unallocated_pool,
            "company_total": self.company_total,
            "total_contractor_share": self.total_contractor_share,
            "total_reimbursements": self.total_reimbursements,
            "has_adjustments": self.has_adjustments,
            "revenue_complete": self.revenue_complete,
            "contractors": [c.to_dict() for c in self.contractors],
        }
