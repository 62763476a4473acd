"""
Profit allocation engine (pure).

    gross_profit          = total_revenue - total_fees
    net_profit            = gross_profit - total_expenses
    contractor_share_pool = round(net_profit * pool_percent / 100)
    company_share         = net_profit - contractor_share_pool
    allocation[c]         = trunc(pool * effective_percent[c] / pool_percent)
    total_payment[c]      = allocation[c] + reimbursement[c]

Allocations are truncated toward zero (ROUND_DOWN) to the minor unit, so
their magnitude never exceeds the pool: in a profit month no contractor is
over-paid, in a loss month no contractor carries more than their share of
the loss.  Whatever reduced percentages or truncation leave behind is
reported as ``unallocated_pool`` and belongs to the company.
"""

from decimal import ROUND_DOWN, Decimal

from billing_kernel.db.types import round_money
from billing_kernel.exceptions import InvalidAdjustmentError
from billing_modules.allocation.models import (
    AllocationInputs,
    ContractorAllocation,
    ProfitAllocation,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def compute_allocation(
    inputs: AllocationInputs,
    pool_percent: Decimal,
    decimal_places: int = 0,
) -> ProfitAllocation:
    """
    Split a month's net profit.

    Raises:
        InvalidAdjustmentError: If an adjusted percent is outside
            [0, pool_percent] or the effective percents exceed the pool.
    """
    gross_profit = inputs.total_revenue - inputs.total_fees
    net_profit = gross_profit - inputs.total_expenses
    pool = round_money(net_profit * pool_percent / HUNDRED, decimal_places)
    company_share = net_profit - pool

    effective: list[tuple] = []
    for contractor in inputs.contractors:
        adjustment = inputs.adjustments.get(contractor.key)
        percent = adjustment.adjusted_percent if adjustment else contractor.default_percent
        if not (ZERO <= percent <= pool_percent):
            raise InvalidAdjustmentError(
                contractor.key, str(percent), f"must be between 0 and {pool_percent}"
            )
        effective.append((contractor, percent, adjustment))

    total_percent = sum((p for _, p, _ in effective), ZERO)
    if total_percent > pool_percent:
        adjusted_keys = ",".join(c.key for c, _, a in effective if a is not None)
        raise InvalidAdjustmentError(
            adjusted_keys or "all", str(total_percent),
            f"effective percents exceed the {pool_percent}% pool",
        )

    allocations: list[ContractorAllocation] = []
    for contractor, percent, adjustment in effective:
        amount = round_money(pool * percent / pool_percent, decimal_places, ROUND_DOWN)
        reimbursement = inputs.reimbursements.get(contractor.key, ZERO)
        allocations.append(
            ContractorAllocation(
                contractor_key=contractor.key,
                display_name=contractor.display_name,
                default_percent=contractor.default_percent,
                effective_percent=percent,
                allocation=amount,
                reimbursement=reimbursement,
                total_payment=amount + reimbursement,
                adjusted=adjustment is not None,
                adjustment_reason=adjustment.reason if adjustment else None,
                adjustment_id=adjustment.adjustment_id if adjustment else None,
            )
        )

    total_share = sum((a.allocation for a in allocations), ZERO)
    return ProfitAllocation(
        year=inputs.year,
        month=inputs.month,
        total_revenue=inputs.total_revenue,
        total_fees=inputs.total_fees,
        gross_profit=gross_profit,
        total_expenses=inputs.total_expenses,
        net_profit=net_profit,
        pool_percent=pool_percent,
        contractor_share_pool=pool,
        company_share=company_share,
        unallocated_pool=pool - total_share,
        total_contractor_share=total_share,
        total_reimbursements=sum((a.reimbursement for a in allocations), ZERO),
        contractors=tuple(allocations),
        revenue_complete=inputs.revenue_complete,
        fetch_error_count=inputs.fetch_error_count,
    )
