"""
Module: billing_services.dispatcher
Responsibility: Route one queued event to its handler.  Processor payloads
    are normalized here into SubscriptionEvent so the subscription module
    never sees raw processor JSON.
Architecture position: Services.  Called by the queue worker inside the
    worker's transaction and the per-subscription keyed lock.

Routing table:

    customer.subscription.created   -> SubscriptionService (created)
    customer.subscription.updated   -> SubscriptionService (updated)
    customer.subscription.deleted   -> SubscriptionService (deleted)
    invoice.payment_succeeded       -> SubscriptionService (payment_succeeded)
    invoice.payment_failed          -> SubscriptionService (payment_failed)
    checkout.session.completed      -> SubscriptionService (checkout_completed),
                                       only with both subscription and customer
    internal.tenant.provision       -> TenantService.provision_for_subscription

Anything else is acknowledged and marked ignored.

Failure modes:
    Handler exceptions propagate; the worker records them on the queue row
    and retries with backoff.  Business outcomes (stale, duplicate,
    rejected, unknown customer) are results, not exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from billing_config.schema import QueueConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.subscriptions.config import SubscriptionConfig
from billing_modules.subscriptions.models import (
    ApplyOutcome,
    SubscriptionEvent,
    SubscriptionTrigger,
)
from billing_modules.subscriptions.service import SubscriptionService
from billing_modules.subscriptions.tenants import TenantService
from billing_services._event_types import (
    TENANT_PROVISION_EVENT,
    DispatchResult,
    DispatchStatus,
    QueuedEvent,
)
from billing_services.event_queue import EventQueue

logger = get_logger("services.dispatcher")

SUBSCRIPTION_EVENT_TRIGGERS: dict[str, SubscriptionTrigger] = {
    "customer.subscription.created": SubscriptionTrigger.CREATED,
    "customer.subscription.updated": SubscriptionTrigger.UPDATED,
    "customer.subscription.deleted": SubscriptionTrigger.DELETED,
}

INVOICE_EVENT_TRIGGERS: dict[str, SubscriptionTrigger] = {
    "invoice.payment_succeeded": SubscriptionTrigger.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": SubscriptionTrigger.PAYMENT_FAILED,
}

CHECKOUT_COMPLETED = "checkout.session.completed"

ROUTED_EVENT_TYPES = frozenset(
    {*SUBSCRIPTION_EVENT_TRIGGERS, *INVOICE_EVENT_TRIGGERS, CHECKOUT_COMPLETED,
     TENANT_PROVISION_EVENT}
)


def tenant_provision_event_id(source_event_id: str) -> str:
    return f"tenant-provision:{source_event_id}"


# -----------------------------------------------------------------------------
# Payload normalization
# -----------------------------------------------------------------------------


def _timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _ref(value: Any) -> str | None:
    """Processor reference that may arrive as an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def occurred_at(envelope: dict[str, Any], fallback: datetime) -> datetime:
    return _timestamp(envelope.get("created")) or fallback


def normalize_subscription(
    event_id: str,
    trigger: SubscriptionTrigger,
    when: datetime,
    obj: dict[str, Any],
) -> SubscriptionEvent:
    """
    Reduce a processor subscription object to a SubscriptionEvent.

    Billing periods are read from the subscription itself, or from its
    first item on API versions that moved them there.
    """
    item = _first_item(obj)
    price = item.get("price") or obj.get("plan") or {}
    recurring = price.get("recurring") or {}
    metadata = obj.get("metadata") or {}

    return SubscriptionEvent(
        event_id=event_id,
        trigger=trigger,
        occurred_at=when,
        processor_subscription_id=obj.get("id"),
        processor_customer_id=_ref(obj.get("customer")),
        reported_status=obj.get("status"),
        price_id=price.get("id"),
        plan_id_hint=metadata.get("plan_id") or metadata.get("planId"),
        interval=recurring.get("interval") or price.get("interval"),
        current_period_start=_timestamp(
            obj.get("current_period_start") or item.get("current_period_start")
        ),
        current_period_end=_timestamp(
            obj.get("current_period_end") or item.get("current_period_end")
        ),
        trial_start=_timestamp(obj.get("trial_start")),
        trial_end=_timestamp(obj.get("trial_end")),
        cancel_at_period_end=obj.get("cancel_at_period_end"),
        canceled_at=_timestamp(obj.get("canceled_at")),
    )


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    direct = _ref(invoice.get("subscription"))
    if direct:
        return direct
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _ref(details.get("subscription"))


def subscription_key(envelope: dict[str, Any]) -> str | None:
    """The processor subscription id an event writes to, if any."""
    event_type = envelope.get("type")
    obj = (envelope.get("data") or {}).get("object") or {}
    if event_type in SUBSCRIPTION_EVENT_TRIGGERS:
        return obj.get("id")
    if event_type in INVOICE_EVENT_TRIGGERS:
        return invoice_subscription_id(obj)
    if event_type in (CHECKOUT_COMPLETED, TENANT_PROVISION_EVENT):
        return _ref(obj.get("subscription"))
    return None


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class EventDispatcher:
    """Runs the handler for one queued event inside the caller's session."""

    def __init__(
        self,
        session: Session,
        plans: SubscriptionConfig,
        queue_config: QueueConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._subscriptions = SubscriptionService(session, plans, self._clock)
        self._tenants = TenantService(session, plans)
        self._queue = EventQueue(session, queue_config, self._clock)
        self._routes: dict[str, Callable[[QueuedEvent], DispatchResult]] = {
            **{t: self._handle_subscription for t in SUBSCRIPTION_EVENT_TRIGGERS},
            **{t: self._handle_invoice for t in INVOICE_EVENT_TRIGGERS},
            CHECKOUT_COMPLETED: self._handle_checkout,
            TENANT_PROVISION_EVENT: self._handle_tenant_provision,
        }

    def dispatch(self, event: QueuedEvent) -> DispatchResult:
        handler = self._routes.get(event.event_type)
        if handler is None:
            logger.info(
                "webhook_event_unrouted",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return DispatchResult(DispatchStatus.IGNORED, "unhandled event type")

        subscription_id = subscription_key(event.payload)
        with LogContext.bind(event_id=event.event_id, subscription_id=subscription_id):
            return handler(event)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handle_subscription(self, event: QueuedEvent) -> DispatchResult:
        obj = event.payload["data"]["object"]
        normalized = normalize_subscription(
            event.event_id,
            SUBSCRIPTION_EVENT_TRIGGERS[event.event_type],
            occurred_at(event.payload, event.received_at),
            obj,
        )
        return self._apply(event, normalized)

    def _handle_invoice(self, event: QueuedEvent) -> DispatchResult:
        invoice = event.payload["data"]["object"]
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return DispatchResult(DispatchStatus.IGNORED, "invoice has no subscription")
        normalized = SubscriptionEvent(
            event_id=event.event_id,
            trigger=INVOICE_EVENT_TRIGGERS[event.event_type],
            occurred_at=occurred_at(event.payload, event.received_at),
            processor_subscription_id=subscription_id,
            processor_customer_id=_ref(invoice.get("customer")),
        )
        return self._apply(event, normalized)

    def _handle_checkout(self, event: QueuedEvent) -> DispatchResult:
        checkout = event.payload["data"]["object"]
        subscription_id = _ref(checkout.get("subscription"))
        customer_id = _ref(checkout.get("customer"))
        if not subscription_id or not customer_id:
            return DispatchResult(
                DispatchStatus.IGNORED, "checkout without subscription and customer"
            )
        normalized = SubscriptionEvent(
            event_id=event.event_id,
            trigger=SubscriptionTrigger.CHECKOUT_COMPLETED,
            occurred_at=occurred_at(event.payload, event.received_at),
            processor_subscription_id=subscription_id,
            processor_customer_id=customer_id,
        )
        return self._apply(event, normalized)

    def _handle_tenant_provision(self, event: QueuedEvent) -> DispatchResult:
        subscription_id = _ref(event.payload["data"]["object"].get("subscription"))
        tenant = self._tenants.provision_for_subscription(subscription_id)
        if tenant is None:
            return DispatchResult(DispatchStatus.PROCESSED, "nothing to provision")
        return DispatchResult(DispatchStatus.PROCESSED, f"tenant {tenant.id}")

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _apply(self, event: QueuedEvent, normalized: SubscriptionEvent) -> DispatchResult:
        result = self._subscriptions.apply_event(normalized)

        if result.outcome == ApplyOutcome.IGNORED:
            return DispatchResult(DispatchStatus.IGNORED, result.reason or "ignored")
        if result.outcome == ApplyOutcome.DEFERRED:
            return DispatchResult(DispatchStatus.DEFERRED, result.reason)
        if result.outcome == ApplyOutcome.REJECTED:
            return DispatchResult(DispatchStatus.IGNORED, f"rejected: {result.reason}")

        follow_ups: tuple[str, ...] = ()
        if result.needs_tenant_provisioning and result.snapshot is not None:
            follow_up_id = tenant_provision_event_id(event.event_id)
            self._queue.enqueue(
                follow_up_id,
                TENANT_PROVISION_EVENT,
                {
                    "id": follow_up_id,
                    "type": TENANT_PROVISION_EVENT,
                    "created": event.payload.get("created"),
                    "source_event_id": event.event_id,
                    "data": {
                        "object": {
                            "subscription": result.snapshot.processor_subscription_id,
                        }
                    },
                },
            )
            follow_ups = (follow_up_id,)

        return DispatchResult(
            DispatchStatus.PROCESSED, result.outcome.value, follow_ups
        )
