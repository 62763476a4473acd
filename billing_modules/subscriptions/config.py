"""
Module: billing_modules.subscriptions.config
Responsibility:
    Plan catalog: processor price ids, plan ids, display names, billing
    intervals, list prices and corporate seat entitlements.

Architecture:
    billing_modules layer -- pure dataclass configuration schema, loaded
    from YAML by billing_config.  No I/O.

Invariants:
    - plan_id values are unique; a price id maps to at most one plan.
    - Corporate plans carry a positive seat limit.
    - Amounts are Decimal.

Failure modes:
    - ValueError from __post_init__ on duplicates or bad values.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self

from billing_kernel.logging_config import get_logger
from billing_modules.subscriptions.models import BillingInterval

logger = get_logger("modules.subscriptions.config")

DEFAULT_SEAT_LIMIT = 10
YEARLY_SUFFIX = "_yearly"


@dataclass(frozen=True)
class PlanDefinition:
    plan_id: str
    name: str
    interval: BillingInterval
    amount: Decimal
    price_ids: tuple[str, ...] = ()
    is_corporate: bool = False
    seat_limit: int | None = None

    def __post_init__(self):
        if not self.plan_id:
            raise ValueError("plan_id is required")
        if self.amount < 0:
            raise ValueError(f"plan {self.plan_id}: amount cannot be negative")
        if self.is_corporate and (self.seat_limit is None or self.seat_limit <= 0):
            raise ValueError(f"corporate plan {self.plan_id} needs a positive seat_limit")


@dataclass
class SubscriptionConfig:
    """
    Plan catalog for the subscription module.

    Contract:
        Lookups never raise for unknown ids; they return None (or a
        generic label / default seat count) and the caller logs.
    """

    plans: tuple[PlanDefinition, ...] = field(default_factory=tuple)
    default_seat_limit: int = DEFAULT_SEAT_LIMIT

    def __post_init__(self):
        seen: set[str] = set()
        prices: set[str] = set()
        for plan in self.plans:
            if plan.plan_id in seen:
                raise ValueError(f"duplicate plan_id: {plan.plan_id}")
            seen.add(plan.plan_id)
            for price_id in plan.price_ids:
                if price_id in prices:
                    raise ValueError(f"price id mapped twice: {price_id}")
                prices.add(price_id)
        if self.default_seat_limit <= 0:
            raise ValueError("default_seat_limit must be positive")

        self._by_plan = {p.plan_id: p for p in self.plans}
        self._by_price = {pid: p for p in self.plans for pid in p.price_ids}

        logger.info(
            "subscription_config_initialized",
            extra={"plan_count": len(self.plans)},
        )

    def by_plan_id(self, plan_id: str | None) -> PlanDefinition | None:
        if plan_id is None:
            return None
        return self._by_plan.get(plan_id)

    def by_price_id(self, price_id: str | None) -> PlanDefinition | None:
        if price_id is None:
            return None
        return self._by_price.get(price_id)

    def resolve_plan_id(
        self,
        price_id: str | None,
        plan_id_hint: str | None,
        interval: str | None,
    ) -> str | None:
        """
        Plan id for a subscription: the price mapping wins, then the
        metadata hint (with ``_yearly`` appended for yearly billing).
        """
        plan = self.by_price_id(price_id)
        if plan is not None:
            return plan.plan_id
        if not plan_id_hint:
            return None
        if interval == BillingInterval.YEAR.value and not plan_id_hint.endswith(YEARLY_SUFFIX):
            return f"{plan_id_hint}{YEARLY_SUFFIX}"
        return plan_id_hint

    def is_corporate(self, plan_id: str | None) -> bool:
        plan = self.by_plan_id(plan_id)
        if plan is not None:
            return plan.is_corporate
        # legacy ids such as "business_yearly" without a catalog row
        return bool(plan_id) and plan_id.startswith("business")

    def seat_limit_for(self, plan_id: str | None) -> int:
        plan = self.by_plan_id(plan_id)
        if plan is not None and plan.seat_limit:
            return plan.seat_limit
        return self.default_seat_limit

    @classmethod
    def with_defaults(cls) -> Self:
        """Catalog with the standard personal and corporate plans."""
        month, year = BillingInterval.MONTH, BillingInterval.YEAR
        return cls(plans=(
            PlanDefinition("monthly", "Monthly plan", month, Decimal("500")),
            PlanDefinition("yearly", "Yearly plan", year, Decimal("5000")),
            PlanDefinition("business", "Business plan", month, Decimal("3000"),
                           is_corporate=True, seat_limit=10),
            PlanDefinition("business_yearly", "Business plan (yearly)", year,
                           Decimal("30000"), is_corporate=True, seat_limit=10),
            PlanDefinition("business_plus", "Business Plus plan", month,
                           Decimal("12000"), is_corporate=True, seat_limit=50),
            PlanDefinition("business_plus_yearly", "Business Plus plan (yearly)",
                           year, Decimal("120000"), is_corporate=True, seat_limit=50),
        ))
