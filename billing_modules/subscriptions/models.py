"""
Subscription Domain Models.

Frozen DTOs and enums for the subscription lifecycle.  Events coming off
the processor are normalized into ``SubscriptionEvent`` before they reach
the state machine, so nothing downstream touches raw processor payloads.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"
    PERMANENT = "permanent"


class SubscriptionTrigger(str, Enum):
    """The only inputs allowed to change a subscription's status."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_COMPLETED = "checkout_completed"


class TenantRole(str, Enum):
    ADMIN = "admin"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"  # older than the record's last applied event
    DUPLICATE = "duplicate"  # same event already applied
    REJECTED = "rejected"  # transition not allowed from current status
    IGNORED = "ignored"  # nothing to apply (unknown customer/subscription)
    DEFERRED = "deferred"  # record not created yet; retry later


@dataclass(frozen=True)
class SubscriptionEvent:
    """A processor notification reduced to what the state machine needs."""

    event_id: str
    trigger: SubscriptionTrigger
    occurred_at: datetime
    processor_subscription_id: str | None = None
    processor_customer_id: str | None = None
    reported_status: str | None = None
    price_id: str | None = None
    plan_id_hint: str | None = None
    interval: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: datetime | None = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: UUID
    customer_id: UUID
    processor_subscription_id: str
    status: SubscriptionStatus
    plan_id: str
    billing_interval: BillingInterval
    price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    corporate_tenant_id: UUID | None
    last_event_id: str | None
    last_event_at: datetime | None
    version: int

    @property
    def is_live(self) -> bool:
        return self.status != SubscriptionStatus.CANCELED

    @property
    def in_trial(self) -> bool:
        return self.status == SubscriptionStatus.TRIALING and self.trial_end is not None


@dataclass(frozen=True)
class TransitionDecision:
    """Result of evaluating one trigger against a current status."""

    allowed: bool
    new_status: SubscriptionStatus | None
    reason: str | None = None


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    event_id: str
    snapshot: SubscriptionSnapshot | None = None
    previous_status: SubscriptionStatus | None = None
    reason: str | None = None
    needs_tenant_provisioning: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == ApplyOutcome.APPLIED


@dataclass(frozen=True)
class CorporateTenantInfo:
    id: UUID
    name: str
    admin_customer_id: UUID
    subscription_record_id: UUID | None
    seat_limit: int
