"""Subscription lifecycle: records, state machine, corporate tenants."""

from billing_modules.subscriptions.models import (
    BillingInterval,
    SubscriptionStatus,
    SubscriptionTrigger,
)

__all__ = ["BillingInterval", "SubscriptionStatus", "SubscriptionTrigger"]
