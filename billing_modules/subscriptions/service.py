"""
Module: billing_modules.subscriptions.service
Responsibility: The only writer of SubscriptionRecord.  Applies normalized
    processor events through the pure state machine, with staleness and
    duplicate detection, row locking and the one-live-record-per-customer
    rule.
Architecture position: Modules > Subscriptions > Services.  Called by the
    webhook dispatcher (billing_services) inside a per-subscription keyed
    lock; flushes only.

Invariants enforced:
    - Events older than the record's last applied event are discarded.  A
      created event no newer than the last applied event only fills fields
      the record is still missing.
    - Payment, checkout and deletion events for a known customer whose
      record does not exist yet are deferred so the queue replays them.
    - Re-applying the event that was last applied is a no-op.
    - ``canceled`` is terminal; cancellation stamps canceled_at and clears
      the owner's tenant role.  Tenants are never deleted here.
    - Leaving ``trialing`` clears trial_end.
    - A new subscription for a customer supersedes (cancels) any other live
      record of theirs.

Failure modes:
    - StaleDataError if another writer bumped the record version first; the
      queue worker retries the event.

Audit relevance:
    Every applied, stale, duplicate and rejected event is logged with the
    processor event id, previous and new status.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger
from billing_modules.subscriptions.config import SubscriptionConfig
from billing_modules.subscriptions.models import (
    ApplyOutcome,
    ApplyResult,
    BillingInterval,
    SubscriptionEvent,
    SubscriptionSnapshot,
    SubscriptionStatus,
    SubscriptionTrigger,
    TenantRole,
)
from billing_modules.subscriptions.orm import CustomerModel, SubscriptionRecordModel
from billing_modules.subscriptions.state_machine import resolve_transition

logger = get_logger("services.subscriptions")

_FIELD_REFRESH_TRIGGERS = frozenset(
    {SubscriptionTrigger.CREATED, SubscriptionTrigger.UPDATED}
)


class SubscriptionService:
    """
    Applies subscription events to local records.

    Contract:
        ``apply_event()`` never raises for business outcomes (stale,
        duplicate, rejected, deferred, unknown customer); those come back
        as an ApplyResult.  Database errors propagate to the caller.

    Non-goals:
        - Does NOT provision tenants (see TenantService); it only reports
          ``needs_tenant_provisioning``.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        config: SubscriptionConfig,
        clock: Clock | None = None,
    ):
        self._session = session
        self._config = config
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_by_processor_id(self, processor_subscription_id: str) -> SubscriptionSnapshot | None:
        record = self._load(processor_subscription_id, lock=False)
        return record.to_dto() if record else None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def apply_event(self, event: SubscriptionEvent) -> ApplyResult:
        """Apply one normalized processor event."""
        record = (
            self._load(event.processor_subscription_id, lock=True)
            if event.processor_subscription_id
            else None
        )

        if record is None:
            return self._apply_without_record(event)

        if record.last_event_id == event.event_id:
            logger.info(
                "subscription_event_duplicate",
                extra={"event_id": event.event_id, "trigger": event.trigger.value},
            )
            return ApplyResult(ApplyOutcome.DUPLICATE, event.event_id, record.to_dto())

        if self._is_stale(record, event):
            if event.trigger == SubscriptionTrigger.CREATED:
                self._fill_missing_fields(record, event)
            logger.info(
                "subscription_event_stale",
                extra={
                    "event_id": event.event_id,
                    "trigger": event.trigger.value,
                    "event_at": event.occurred_at,
                    "last_event_at": record.last_event_at,
                    "last_event_id": record.last_event_id,
                },
            )
            return ApplyResult(ApplyOutcome.STALE, event.event_id, record.to_dto(),
                               reason="not newer than last applied event")

        previous = SubscriptionStatus(record.status)
        decision = resolve_transition(previous, event.trigger, event.reported_status)
        if not decision.allowed:
            logger.warning(
                "subscription_transition_rejected",
                extra={
                    "event_id": event.event_id,
                    "trigger": event.trigger.value,
                    "current_status": previous.value,
                    "reason": decision.reason,
                },
            )
            return ApplyResult(ApplyOutcome.REJECTED, event.event_id, record.to_dto(),
                               previous_status=previous, reason=decision.reason)

        self._apply(record, event, decision.new_status)
        return self._applied(record, event, previous)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _apply_without_record(self, event: SubscriptionEvent) -> ApplyResult:
        if not event.processor_subscription_id:
            logger.info(
                "subscription_event_without_record",
                extra={"event_id": event.event_id, "trigger": event.trigger.value},
            )
            return ApplyResult(ApplyOutcome.IGNORED, event.event_id,
                               reason="no local subscription record")

        customer = self._find_customer(event.processor_customer_id)
        if customer is None:
            logger.error(
                "subscription_customer_unknown",
                extra={
                    "event_id": event.event_id,
                    "processor_customer_id": event.processor_customer_id,
                },
            )
            return ApplyResult(ApplyOutcome.IGNORED, event.event_id,
                               reason="unknown processor customer")

        if event.trigger not in _FIELD_REFRESH_TRIGGERS:
            # The created event is still on its way; the queue retries this one.
            logger.info(
                "subscription_event_deferred",
                extra={
                    "event_id": event.event_id,
                    "trigger": event.trigger.value,
                    "processor_subscription_id": event.processor_subscription_id,
                },
            )
            return ApplyResult(ApplyOutcome.DEFERRED, event.event_id,
                               reason="subscription record not created yet")

        decision = resolve_transition(None, SubscriptionTrigger.CREATED, event.reported_status)
        self._supersede_live_records(customer, event)

        record = SubscriptionRecordModel(
            customer_id=customer.id,
            processor_subscription_id=event.processor_subscription_id,
            processor_customer_id=event.processor_customer_id,
            status=decision.new_status.value,
            plan_id="unknown",
            created_by_id=SYSTEM_ACTOR_ID,
        )
        self._session.add(record)
        self._apply(record, event, decision.new_status, customer=customer)

        if event.trigger == SubscriptionTrigger.UPDATED:
            logger.info(
                "subscription_created_from_update",
                extra={"event_id": event.event_id},
            )
        return self._applied(record, event, None)

    def _apply(
        self,
        record: SubscriptionRecordModel,
        event: SubscriptionEvent,
        new_status: SubscriptionStatus,
        customer: CustomerModel | None = None,
    ) -> None:
        if event.trigger in _FIELD_REFRESH_TRIGGERS:
            self._refresh_fields(record, event)

        record.status = new_status.value

        if new_status != SubscriptionStatus.TRIALING:
            record.trial_end = None

        if new_status == SubscriptionStatus.CANCELED:
            record.canceled_at = record.canceled_at or event.canceled_at or self._clock.now()
            self._clear_tenant_role(customer or self._session.get(CustomerModel, record.customer_id))

        record.last_event_id = event.event_id
        record.last_event_at = event.occurred_at
        record.updated_by_id = SYSTEM_ACTOR_ID
        self._session.flush()

    def _refresh_fields(self, record: SubscriptionRecordModel, event: SubscriptionEvent) -> None:
        plan_id = self._config.resolve_plan_id(event.price_id, event.plan_id_hint, event.interval)
        if plan_id is None:
            logger.warning(
                "subscription_plan_unresolved",
                extra={"event_id": event.event_id, "price_id": event.price_id},
            )
        else:
            record.plan_id = plan_id

        record.billing_interval = self._resolve_interval(record, event).value
        if event.price_id is not None:
            record.price_id = event.price_id
        record.current_period_start = event.current_period_start
        record.current_period_end = event.current_period_end
        record.trial_start = event.trial_start
        record.trial_end = event.trial_end
        if event.cancel_at_period_end is not None:
            record.cancel_at_period_end = event.cancel_at_period_end
        if event.canceled_at is not None:
            record.canceled_at = event.canceled_at

    def _is_stale(self, record: SubscriptionRecordModel, event: SubscriptionEvent) -> bool:
        if record.last_event_at is None:
            return False
        if event.trigger == SubscriptionTrigger.CREATED:
            return event.occurred_at <= record.last_event_at
        return event.occurred_at < record.last_event_at

    def _fill_missing_fields(
        self, record: SubscriptionRecordModel, event: SubscriptionEvent,
    ) -> None:
        if record.plan_id == "unknown":
            plan_id = self._config.resolve_plan_id(
                event.price_id, event.plan_id_hint, event.interval
            )
            if plan_id is not None:
                record.plan_id = plan_id
        if record.price_id is None:
            record.price_id = event.price_id
        if record.billing_interval is None:
            record.billing_interval = self._resolve_interval(record, event).value
        if record.current_period_start is None:
            record.current_period_start = event.current_period_start
        if record.current_period_end is None:
            record.current_period_end = event.current_period_end
        if record.trial_start is None:
            record.trial_start = event.trial_start
        self._session.flush()

    def _resolve_interval(
        self, record: SubscriptionRecordModel, event: SubscriptionEvent,
    ) -> BillingInterval:
        if event.interval in (BillingInterval.MONTH.value, BillingInterval.YEAR.value):
            return BillingInterval(event.interval)
        plan = self._config.by_plan_id(record.plan_id)
        if plan is not None:
            return plan.interval
        if record.billing_interval:
            return BillingInterval(record.billing_interval)
        return BillingInterval.MONTH

    def _supersede_live_records(self, customer: CustomerModel, event: SubscriptionEvent) -> None:
        live = self._session.execute(
            select(SubscriptionRecordModel)
            .where(
                SubscriptionRecordModel.customer_id == customer.id,
                SubscriptionRecordModel.status != SubscriptionStatus.CANCELED.value,
            )
            .with_for_update()
        ).scalars().all()
        for old in live:
            logger.info(
                "subscription_superseded",
                extra={
                    "event_id": event.event_id,
                    "superseded_subscription": old.processor_subscription_id,
                    "previous_status": old.status,
                },
            )
            old.status = SubscriptionStatus.CANCELED.value
            old.trial_end = None
            old.canceled_at = old.canceled_at or self._clock.now()
            old.updated_by_id = SYSTEM_ACTOR_ID
        if live:
            self._session.flush()

    def _clear_tenant_role(self, customer: CustomerModel | None) -> None:
        if customer is None or customer.tenant_role != TenantRole.ADMIN.value:
            return
        customer.tenant_role = None
        customer.updated_by_id = SYSTEM_ACTOR_ID
        logger.info(
            "tenant_role_cleared",
            extra={"customer_id": str(customer.id)},
        )

    def _applied(
        self,
        record: SubscriptionRecordModel,
        event: SubscriptionEvent,
        previous: SubscriptionStatus | None,
    ) -> ApplyResult:
        snapshot = record.to_dto()
        needs_tenant = (
            event.trigger in _FIELD_REFRESH_TRIGGERS
            and snapshot.is_live
            and self._config.is_corporate(snapshot.plan_id)
        )
        logger.info(
            "subscription_event_applied",
            extra={
                "event_id": event.event_id,
                "trigger": event.trigger.value,
                "previous_status": previous.value if previous else None,
                "new_status": snapshot.status.value,
                "plan_id": snapshot.plan_id,
                "version": snapshot.version,
            },
        )
        return ApplyResult(
            ApplyOutcome.APPLIED,
            event.event_id,
            snapshot,
            previous_status=previous,
            needs_tenant_provisioning=needs_tenant,
        )

    def _load(self, processor_subscription_id: str, lock: bool) -> SubscriptionRecordModel | None:
        stmt = select(SubscriptionRecordModel).where(
            SubscriptionRecordModel.processor_subscription_id == processor_subscription_id
        )
        if lock:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def _find_customer(self, processor_customer_id: str | None) -> CustomerModel | None:
        if not processor_customer_id:
            return None
        return self._session.execute(
            select(CustomerModel).where(
                CustomerModel.processor_customer_id == processor_customer_id
            )
        ).scalar_one_or_none()
