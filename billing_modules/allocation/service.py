"""
Module: billing_modules.allocation.service
Responsibility: Gather a month's inputs (subscription revenue, approved
    operating expenses, approved adjustments, contractor reimbursements)
    and hand them to the pure allocation engine.
Architecture position: Modules > Allocation > Services.  Read-only; may be
    called any number of times before a month is finalized.

Invariants enforced:
    - An approved adjustment for contractor X in month M changes only X's
      effective percent, only for M.
    - The result records whether the underlying revenue fetch was complete.
"""

from decimal import Decimal

from billing_kernel.logging_config import get_logger
from billing_modules.allocation.config import AllocationConfig
from billing_modules.allocation.engine import compute_allocation
from billing_modules.allocation.models import AllocationInputs, ProfitAllocation
from billing_modules.allocation.sources import AdjustmentSource, ExpenseLedger
from billing_modules.revenue.models import RevenueReport
from billing_modules.revenue.service import RevenueReconciliationService

logger = get_logger("services.allocation")


class ProfitAllocationService:
    """Computes (never persists) a month's profit allocation."""

    def __init__(
        self,
        revenue: RevenueReconciliationService,
        expenses: ExpenseLedger,
        adjustments: AdjustmentSource,
        config: AllocationConfig,
        decimal_places: int = 0,
    ):
        self._revenue = revenue
        self._expenses = expenses
        self._adjustments = adjustments
        self._config = config
        self._decimal_places = decimal_places

    def compute_allocation(self, year: int, month: int) -> ProfitAllocation:
        report = self._revenue.reconcile_month(year, month)
        return self.compute_from_report(report, year, month)

    def compute_from_report(
        self, report: RevenueReport, year: int, month: int,
    ) -> ProfitAllocation:
        inputs = self.gather_inputs(report, year, month)
        allocation = compute_allocation(
            inputs, self._config.pool_percent, self._decimal_places
        )
        logger.info(
            "allocation_computed",
            extra={
                "year": year,
                "month": month,
                "net_profit": allocation.net_profit,
                "contractor_share_pool": allocation.contractor_share_pool,
                "company_share": allocation.company_share,
                "unallocated_pool": allocation.unallocated_pool,
                "has_adjustments": allocation.has_adjustments,
                "revenue_complete": allocation.revenue_complete,
            },
        )
        return allocation

    def gather_inputs(self, report: RevenueReport, year: int, month: int) -> AllocationInputs:
        adjustments = {}
        reimbursements: dict[str, Decimal] = {}
        for contractor in self._config.contractors:
            adjustment = self._adjustments.approved_adjustment(contractor.key, year, month)
            if adjustment is not None:
                adjustments[contractor.key] = adjustment
            reimbursements[contractor.key] = self._expenses.reimbursements(
                contractor.key, year, month
            )
        return AllocationInputs(
            year=year,
            month=month,
            total_revenue=report.total_revenue,
            total_fees=report.total_fees,
            total_expenses=self._expenses.operating_expenses(year, month),
            contractors=self._config.contractors,
            adjustments=adjustments,
            reimbursements=reimbursements,
            revenue_complete=report.complete,
            fetch_error_count=len(report.fetch_errors),
        )
