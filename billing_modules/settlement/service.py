"""
Module: billing_modules.settlement.service
Responsibility: Persist a month's profit allocation as a settlement
    snapshot and walk it through draft -> finalized -> paid.
Architecture position: Modules > Settlement > Services.  Flushes only;
    the caller (AdminOperations) owns the transaction, the keyed lock and
    the idempotency guard.

Invariants enforced:
    - At most one settlement per (year, month).
    - A finalized or paid month is never recomputed or rewritten.
    - Payment is recorded only on a settlement that is exactly finalized.
    - Finalization is refused when the revenue fetch behind it was partial.

Failure modes:
    - SettlementAlreadyFinalizedError, SettlementNotFinalizedError,
      SettlementNotFoundError, DegradedRevenueError.
    - InvalidSettlementTransitionError from the ORM status validator.

Audit relevance:
    finalized_by/at and paid_by/at are stamped on the row and every
    transition is logged with the acting user.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    DegradedRevenueError,
    SettlementAlreadyFinalizedError,
    SettlementNotFinalizedError,
    SettlementNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_modules.allocation.models import ProfitAllocation
from billing_modules.allocation.service import ProfitAllocationService
from billing_modules.settlement.models import SettlementSnapshot, SettlementStatus
from billing_modules.settlement.orm import MonthlySettlementModel, SettlementShareModel

logger = get_logger("services.settlement")

_LOCKED_STATUSES = frozenset(
    {SettlementStatus.FINALIZED.value, SettlementStatus.PAID.value}
)


class SettlementService:
    """Owns the MonthlySettlement lifecycle."""

    def __init__(
        self,
        session: Session,
        allocation: ProfitAllocationService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._allocation = allocation
        self._clock = clock or SystemClock()

    def get_settlement(self, year: int, month: int) -> SettlementSnapshot | None:
        row = self._load(year, month)
        return row.to_dto() if row is not None else None

    def save_draft(self, year: int, month: int, actor_id: UUID) -> SettlementSnapshot:
        """
        Persist (or refresh) a draft snapshot of the current allocation.

        Drafts may be built from a partial revenue fetch; they are
        working copies, not payouts.

        Raises:
            SettlementAlreadyFinalizedError: If the month is finalized or paid.
        """
        self._ensure_open(year, month)
        allocation = self._allocation.compute_allocation(year, month)
        row = self._write_snapshot(
            year, month, allocation, SettlementStatus.DRAFT, actor_id
        )
        logger.info(
            "settlement_draft_saved",
            extra={
                "year": year,
                "month": month,
                "actor_id": str(actor_id),
                "net_profit": allocation.net_profit,
                "revenue_complete": allocation.revenue_complete,
            },
        )
        return row.to_dto()

    def finalize_settlement(self, year: int, month: int, actor_id: UUID) -> SettlementSnapshot:
        """
        Recompute the month from fresh inputs and lock it as finalized.

        Raises:
            SettlementAlreadyFinalizedError: If already finalized or paid.
            DegradedRevenueError: If the revenue fetch was partial.
        """
        self._ensure_open(year, month)
        allocation = self._allocation.compute_allocation(year, month)
        if not allocation.revenue_complete:
            logger.warning(
                "settlement_finalize_refused_degraded",
                extra={
                    "year": year,
                    "month": month,
                    "fetch_error_count": allocation.fetch_error_count,
                },
            )
            raise DegradedRevenueError(year, month, allocation.fetch_error_count)

        row = self._write_snapshot(
            year, month, allocation, SettlementStatus.FINALIZED, actor_id
        )
        row.finalized_by_id = actor_id
        row.finalized_at = self._clock.now()
        self._session.flush()

        logger.info(
            "settlement_finalized",
            extra={
                "year": year,
                "month": month,
                "actor_id": str(actor_id),
                "net_profit": allocation.net_profit,
                "contractor_share_pool": allocation.contractor_share_pool,
                "company_share": allocation.company_share,
                "unallocated_pool": allocation.unallocated_pool,
            },
        )
        return row.to_dto()

    def record_payment(self, year: int, month: int, actor_id: UUID) -> SettlementSnapshot:
        """
        Mark a finalized settlement as paid.

        Raises:
            SettlementNotFoundError: If the month has no settlement.
            SettlementNotFinalizedError: Unless the status is exactly finalized.
        """
        row = self._load(year, month, for_update=True)
        if row is None:
            raise SettlementNotFoundError(year, month)
        if row.status != SettlementStatus.FINALIZED.value:
            raise SettlementNotFinalizedError(year, month, row.status)

        row.status = SettlementStatus.PAID.value
        row.paid_by_id = actor_id
        row.paid_at = self._clock.now()
        row.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "settlement_paid",
            extra={"year": year, "month": month, "actor_id": str(actor_id)},
        )
        return row.to_dto()

    # ------------------------------------------------------------------

    def _load(self, year: int, month: int, for_update: bool = False) -> MonthlySettlementModel | None:
        stmt = select(MonthlySettlementModel).where(
            MonthlySettlementModel.year == year,
            MonthlySettlementModel.month == month,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def _ensure_open(self, year: int, month: int) -> None:
        row = self._load(year, month)
        if row is not None and row.status in _LOCKED_STATUSES:
            raise SettlementAlreadyFinalizedError(year, month, row.status)

    def _write_snapshot(
        self,
        year: int,
        month: int,
        allocation: ProfitAllocation,
        status: SettlementStatus,
        actor_id: UUID,
    ) -> MonthlySettlementModel:
        # Re-check under the row lock; computing the allocation may have
        # taken a while.
        row = self._load(year, month, for_update=True)
        if row is not None and row.status in _LOCKED_STATUSES:
            raise SettlementAlreadyFinalizedError(year, month, row.status)

        if row is None:
            row = MonthlySettlementModel(
                year=year,
                month=month,
                status=status.value,
                created_by_id=actor_id,
                **_figures(allocation),
            )
            row.shares = _shares(allocation)
            try:
                with self._session.begin_nested():
                    self._session.add(row)
                    self._session.flush()
            except IntegrityError:
                # Another writer created the month first.
                existing = self._load(year, month)
                if existing is not None and existing.status in _LOCKED_STATUSES:
                    raise SettlementAlreadyFinalizedError(year, month, existing.status)
                raise
            return row

        for key, value in _figures(allocation).items():
            setattr(row, key, value)
        row.shares.clear()
        self._session.flush()
        row.shares.extend(_shares(allocation))
        if row.status != status.value:
            row.status = status.value
        row.updated_by_id = actor_id
        self._session.flush()
        return row


def _figures(allocation: ProfitAllocation) -> dict:
    return {
        "total_revenue": allocation.total_revenue,
        "total_fees": allocation.total_fees,
        "gross_profit": allocation.gross_profit,
        "total_expenses": allocation.total_expenses,
        "net_profit": allocation.net_profit,
        "contractor_share_pool": allocation.contractor_share_pool,
        "company_share": allocation.company_share,
        "unallocated_pool": allocation.unallocated_pool,
        "total_contractor_share": allocation.total_contractor_share,
    }


def _shares(allocation: ProfitAllocation) -> list[SettlementShareModel]:
    return [
        SettlementShareModel(
            contractor_key=c.contractor_key,
            percent=c.effective_percent,
            allocation=c.allocation,
            reimbursement=c.reimbursement,
            total_payment=c.total_payment,
            adjusted=c.adjusted,
            adjustment_reason=c.adjustment_reason,
        )
        for c in allocation.contractors
    ]
