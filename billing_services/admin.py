"""
Module: billing_services.admin
Responsibility: Human-triggered administrative operations: revenue
    reports, allocation preview, the settlement lifecycle, bulk broadcasts,
    tenant deletion and maintenance.  Each write runs in its own committed
    unit of work under an in-process keyed lock and the idempotency guard.
Architecture position: Services.  The HTTP admin routes are a thin layer
    over this class.

Invariants enforced:
    - Write operations require a caller idempotency key; the key is scoped
      by operation and period before it reaches the guard.
    - Submissions with the same key serialize on the keyed lock (in
      process) and on UNIQUE(operation, key) (across processes); the
      second one replays the first one's result.
    - Settlement writes for one month serialize on a period lock whatever
      their keys, so "finalize" twice with different keys yields one
      finalization and one SettlementAlreadyFinalizedError.
    - A failed operation leaves no partial writes and no idempotency claim.
"""

from __future__ import annotations

import time
from contextlib import ExitStack
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from billing_config.schema import BillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    BillingKernelError,
    IdempotencyKeyRequiredError,
    SettlementError,
    TenantError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.idempotency_guard import IdempotencyGuard, IdempotentResult
from billing_kernel.utils.hashing import to_json_compatible
from billing_kernel.utils.idempotency import generate_idempotency_key, period_scope
from billing_kernel.utils.locks import KeyedLocks
from billing_modules.allocation.service import ProfitAllocationService
from billing_modules.allocation.sources import SqlAdjustmentSource, SqlExpenseLedger
from billing_modules.broadcast.sender import EmailSender
from billing_modules.broadcast.service import BroadcastService
from billing_modules.revenue.service import RevenueReconciliationService
from billing_modules.settlement.service import SettlementService
from billing_modules.subscriptions.tenants import TenantService
from billing_services.event_queue import EventQueue
from billing_services.observability import log_admin_operation, log_guard_failure

logger = get_logger("services.admin")

OP_SAVE_DRAFT = "settlement.save_draft"
OP_FINALIZE = "settlement.finalize"
OP_RECORD_PAYMENT = "settlement.record_payment"
OP_BROADCAST = "broadcast.create"


class AdminOperations:
    """Entry point for administrative reads and writes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: BillingConfig,
        revenue: RevenueReconciliationService,
        sender: EmailSender,
        clock: Clock | None = None,
        locks: KeyedLocks | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._config = config
        self._revenue = revenue
        self._sender = sender
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLocks()
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def compute_allocation(self, year: int, month: int) -> dict[str, Any]:
        """Preview a month's split.  Nothing is persisted."""
        with session_scope(self._session_factory) as session:
            allocation = self._allocation(session).compute_allocation(year, month)
        return to_json_compatible(allocation.to_dict())

    def revenue_report(self, year: int, month: int) -> dict[str, Any]:
        """
        Reconciled revenue for a month with year-over-year growth.

        A partial fetch is returned with ``complete=False`` and its errors
        rather than raised; only settlement writes refuse degraded data.
        """
        report = self._revenue.reconcile_month(year, month)
        comparison = self._revenue.compare_with_previous_year(year, month, current=report)
        return to_json_compatible({
            "year": year,
            "month": month,
            "summary": report.summary.to_dict(),
            "by_plan": [
                {
                    "plan_key": plan.plan_key,
                    "plan_label": plan.plan_label,
                    "interval": plan.interval,
                    "summary": plan.summary.to_dict(),
                }
                for plan in report.by_plan
            ],
            "top_plan": report.top_plan.plan_key if report.top_plan else None,
            "monthly_recurring_revenue": report.monthly_recurring_revenue,
            "excluded": {
                "refund_count": report.excluded_refund_count,
                "refund_amount": report.excluded_refund_amount,
                "non_subscription_count": report.excluded_non_subscription_count,
                "non_subscription_amount": report.excluded_non_subscription_amount,
            },
            "complete": comparison.complete,
            "resume_cursor": report.resume_cursor,
            "fetch_errors": list(report.fetch_errors),
            "previous_year_total": comparison.previous.total_amount,
            "growth_rate": comparison.growth_rate,
        })

    def get_settlement(self, year: int, month: int) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as session:
            snapshot = self._settlements(session).get_settlement(year, month)
        return to_json_compatible(snapshot.to_dict()) if snapshot else None

    def save_draft(
        self, year: int, month: int, actor_id: UUID, idempotency_key: str | None,
    ) -> IdempotentResult:
        return self._settlement_write(
            OP_SAVE_DRAFT, year, month, actor_id, idempotency_key,
            lambda s: s.save_draft(year, month, actor_id),
        )

    def finalize_settlement(
        self, year: int, month: int, actor_id: UUID, idempotency_key: str | None,
    ) -> IdempotentResult:
        return self._settlement_write(
            OP_FINALIZE, year, month, actor_id, idempotency_key,
            lambda s: s.finalize_settlement(year, month, actor_id),
        )

    def record_payment(
        self, year: int, month: int, actor_id: UUID, idempotency_key: str | None,
    ) -> IdempotentResult:
        return self._settlement_write(
            OP_RECORD_PAYMENT, year, month, actor_id, idempotency_key,
            lambda s: s.record_payment(year, month, actor_id),
        )

    # -------------------------------------------------------------------------
    # Broadcast
    # -------------------------------------------------------------------------

    def broadcast(
        self,
        subject: str,
        body: str,
        target_group: str,
        actor_id: UUID,
        idempotency_key: str | None,
        run: bool = True,
    ) -> IdempotentResult:
        """
        Create a broadcast (once per key) and, unless ``run`` is False,
        deliver it.  A replayed key resumes an unfinished delivery and never
        re-sends a completed one.
        """
        def create(session: Session) -> dict[str, Any]:
            return self._broadcasts(session).create(
                subject, body, target_group, actor_id
            ).to_dict()

        created = self._guarded(OP_BROADCAST, target_group, idempotency_key, actor_id, create)
        if not run:
            return created

        summary = self.run_broadcast(UUID(created.value["id"]))
        return IdempotentResult(value=summary, replayed=created.replayed, key=created.key)

    def run_broadcast(self, broadcast_id: UUID) -> dict[str, Any]:
        with self._locks.hold(f"broadcast:{broadcast_id}"):
            session = self._session_factory()
            try:
                summary = self._broadcasts(session).run(broadcast_id)
                return to_json_compatible(summary.to_dict())
            finally:
                session.close()

    # -------------------------------------------------------------------------
    # Tenants and maintenance
    # -------------------------------------------------------------------------

    def delete_tenant(self, tenant_id: UUID, actor_id: UUID) -> None:
        with self._locks.hold(f"tenant:{tenant_id}"), LogContext.bind(actor_id=actor_id):
            try:
                with session_scope(self._session_factory) as session:
                    TenantService(session, self._config.plans).delete_tenant_if_empty(
                        tenant_id, actor_id
                    )
            except TenantError as exc:
                log_guard_failure(guard_type=exc.code, tenant_id=str(tenant_id))
                raise

    def purge_expired_idempotency_records(self) -> int:
        with session_scope(self._session_factory) as session:
            return self._guard(session).purge_expired()

    def list_webhook_events(
        self,
        status: str | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, Any]:
        with session_scope(self._session_factory) as session:
            result = EventQueue(session, self._config.queue, self._clock).list_events(
                status=status, event_type=event_type, page=page, limit=limit
            )
            events = [
                {
                    "event_id": e.event_id,
                    "event_type": e.event_type,
                    "status": e.status.value,
                    "attempts": e.attempts,
                    "max_attempts": e.max_attempts,
                    "last_error": e.last_error,
                    "received_at": e.received_at,
                    "processed_at": e.processed_at,
                }
                for e in result.events
            ]
        return to_json_compatible({
            "events": events,
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "total_pages": result.total_pages,
            },
            "status_counts": result.status_counts,
            "event_type_counts": result.event_type_counts,
        })

    def requeue_dead_letter(self, event_id: str) -> dict[str, Any]:
        with session_scope(self._session_factory) as session:
            event = EventQueue(session, self._config.queue, self._clock).requeue_dead_letter(
                event_id
            )
        return {"event_id": event.event_id, "status": event.status.value}

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _settlement_write(
        self,
        operation: str,
        year: int,
        month: int,
        actor_id: UUID,
        idempotency_key: str | None,
        action: Callable[[SettlementService], Any],
    ) -> IdempotentResult:
        scope = period_scope(year, month)

        def run(session: Session) -> dict[str, Any]:
            return action(self._settlements(session)).to_dict()

        return self._guarded(
            operation, scope, idempotency_key, actor_id, run,
            extra_locks=(f"settlement:{scope}",),
        )

    def _guarded(
        self,
        operation: str,
        scope: str,
        caller_key: str | None,
        actor_id: UUID,
        fn: Callable[[Session], Any],
        extra_locks: tuple[str, ...] = (),
    ) -> IdempotentResult:
        if not caller_key:
            raise IdempotencyKeyRequiredError(operation)
        key = generate_idempotency_key(operation, scope, caller_key)
        started = time.perf_counter()

        with ExitStack() as stack:
            stack.enter_context(self._locks.hold(key))
            for lock_key in extra_locks:
                stack.enter_context(self._locks.hold(lock_key))
            stack.enter_context(LogContext.bind(idempotency_key=key, actor_id=actor_id))
            try:
                with session_scope(self._session_factory) as session:
                    result = self._guard(session).execute(
                        operation, key, lambda: fn(session)
                    )
            except (SettlementError, TenantError) as exc:
                log_guard_failure(guard_type=exc.code, operation=operation, scope=scope)
                raise
            except BillingKernelError as exc:
                logger.warning(
                    "admin_operation_rejected",
                    extra={"operation": operation, "scope": scope, "code": exc.code},
                )
                raise

        log_admin_operation(
            operation=operation,
            replayed=result.replayed,
            duration_ms=(time.perf_counter() - started) * 1000,
            scope=scope,
        )
        return result

    def _guard(self, session: Session) -> IdempotencyGuard:
        return IdempotencyGuard(
            session, self._clock, self._config.idempotency.window_minutes
        )

    def _allocation(self, session: Session) -> ProfitAllocationService:
        return ProfitAllocationService(
            self._revenue,
            SqlExpenseLedger(session),
            SqlAdjustmentSource(session),
            self._config.allocation,
            decimal_places=self._config.revenue.decimal_places,
        )

    def _settlements(self, session: Session) -> SettlementService:
        return SettlementService(session, self._allocation(session), self._clock)

    def _broadcasts(self, session: Session) -> BroadcastService:
        return BroadcastService(
            session,
            self._sender,
            self._config.plans,
            self._config.broadcast,
            self._clock,
            sleep=self._sleep,
        )
