"""
Subscription lifecycle state machine (pure).

States: trialing, active, past_due, canceled, incomplete.

    created ──► <processor-reported status>
    updated ──► <processor-reported status>        (from any live status)
    deleted ──► canceled                            (from any live status)
    payment_succeeded / checkout_completed ──► active
    payment_failed ──► past_due                     (trialing/active/past_due)

``canceled`` is terminal: nothing but a brand-new processor subscription
(a new record) brings a customer back.  No I/O here; the service layer
owns locking, staleness and persistence.
"""

from billing_kernel.logging_config import get_logger
from billing_modules.subscriptions.models import (
    SubscriptionStatus,
    SubscriptionTrigger,
    TransitionDecision,
)

logger = get_logger("modules.subscriptions.state_machine")

S = SubscriptionStatus
T = SubscriptionTrigger

PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "canceled": S.CANCELED,
    "incomplete": S.INCOMPLETE,
    "incomplete_expired": S.CANCELED,
    "unpaid": S.PAST_DUE,
    "paused": S.PAST_DUE,
}

LIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {S.TRIALING, S.ACTIVE, S.PAST_DUE, S.INCOMPLETE}
)

_ALLOWED_FROM: dict[SubscriptionTrigger, frozenset[SubscriptionStatus]] = {
    T.UPDATED: LIVE_STATUSES,
    T.DELETED: LIVE_STATUSES,
    T.PAYMENT_SUCCEEDED: LIVE_STATUSES,
    T.CHECKOUT_COMPLETED: LIVE_STATUSES,
    T.PAYMENT_FAILED: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE}),
}

_FIXED_TARGET: dict[SubscriptionTrigger, SubscriptionStatus] = {
    T.DELETED: S.CANCELED,
    T.PAYMENT_SUCCEEDED: S.ACTIVE,
    T.CHECKOUT_COMPLETED: S.ACTIVE,
    T.PAYMENT_FAILED: S.PAST_DUE,
}


def map_processor_status(raw: str | None) -> SubscriptionStatus:
    """Map a processor status string; unknown values become ``incomplete``."""
    if raw is None:
        return S.INCOMPLETE
    status = PROCESSOR_STATUS_MAP.get(raw)
    if status is None:
        logger.warning("processor_status_unmapped", extra={"processor_status": raw})
        return S.INCOMPLETE
    return status


def resolve_transition(
    current: SubscriptionStatus | None,
    trigger: SubscriptionTrigger,
    reported_status: str | None = None,
) -> TransitionDecision:
    """
    Decide the status a trigger moves a record to.

    Args:
        current: Status of the existing record, or None if there is none.
        trigger: What happened.
        reported_status: Processor status carried by created/updated events.

    Returns:
        TransitionDecision.  ``allowed=False`` means leave the record alone.
    """
    if trigger == T.CREATED:
        if current == S.CANCELED:
            return TransitionDecision(False, None, "canceled subscriptions are terminal")
        return TransitionDecision(True, map_processor_status(reported_status))

    if current is None:
        return TransitionDecision(False, None, "no subscription record to update")

    allowed = _ALLOWED_FROM[trigger]
    if current not in allowed:
        return TransitionDecision(
            False, None, f"{trigger.value} not allowed from {current.value}"
        )

    if trigger == T.UPDATED:
        return TransitionDecision(True, map_processor_status(reported_status))

    return TransitionDecision(True, _FIXED_TARGET[trigger])

