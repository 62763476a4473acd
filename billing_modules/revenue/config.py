"""
Module: billing_modules.revenue.config
Responsibility:
    Configuration for revenue reconciliation: currency, processor fee rate
    and fee source, classification vocabulary, plan labels and intervals,
    fetcher paging and retry limits, reporting timezone.

Architecture:
    billing_modules layer -- pure dataclass configuration schema.
    Consumed by the classifier, aggregator, fetcher and
    RevenueReconciliationService.  Loaded by billing_config.

Invariants:
    - 0 <= fee_rate < 1, Decimal only.
    - fee_source in {estimated, actual}.
    - 1 <= page_size <= 100 (processor maximum).
    - max_range_days <= 365.

Failure modes:
    - ValueError on invalid values in __post_init__.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self
from zoneinfo import ZoneInfo

from billing_kernel.db.types import currency_decimal_places
from billing_kernel.logging_config import get_logger
from billing_modules.subscriptions.models import BillingInterval

logger = get_logger("modules.revenue.config")

MAX_PAGE_SIZE = 100
FEE_SOURCES = ("estimated", "actual")


@dataclass
class RevenueConfig:
    """
    Configuration schema for revenue reconciliation.

    Contract:
        Mutable dataclass so it can be built from YAML; validated in
        ``__post_init__``.  Vocabulary matching is case-insensitive.
    """

    currency: str = "jpy"
    fee_rate: Decimal = Decimal("0.036")
    fee_source: str = "estimated"
    timezone: str = "UTC"

    # Explicit category tag set by the code path that created the charge
    category_tag_key: str = "transaction_category"

    # Physical-goods / one-time purchase evidence
    product_type_keys: tuple[str, ...] = ("product_type", "productType")
    physical_product_types: tuple[str, ...] = ("physical", "goods", "one_time", "product")
    shipping_fee_keys: tuple[str, ...] = ("shipping_fee", "shippingFee")
    quantity_keys: tuple[str, ...] = ("quantity", "item_quantity", "itemQuantity")
    product_vocabulary: tuple[str, ...] = ()

    # Subscription evidence
    plan_id_keys: tuple[str, ...] = ("plan_id", "planId")
    plan_name_keys: tuple[str, ...] = ("plan_name", "planName")
    subscription_keywords: tuple[str, ...] = ("subscription", "plan", "monthly", "yearly")

    plan_names: dict[str, str] = field(default_factory=dict)
    plan_intervals: dict[str, str] = field(default_factory=dict)

    # Fetcher
    page_size: int = MAX_PAGE_SIZE
    max_attempts: int = 4
    backoff_base_seconds: float = 1.0
    max_range_days: int = 365

    def __post_init__(self):
        self.fee_rate = Decimal(str(self.fee_rate))
        if not (Decimal("0") <= self.fee_rate < Decimal("1")):
            raise ValueError("fee_rate must be in [0, 1)")
        if self.fee_source not in FEE_SOURCES:
            raise ValueError(f"fee_source must be one of {FEE_SOURCES}")
        if not (1 <= self.page_size <= MAX_PAGE_SIZE):
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not (1 <= self.max_range_days <= 365):
            raise ValueError("max_range_days must be between 1 and 365")
        for interval in self.plan_intervals.values():
            BillingInterval(interval)
        ZoneInfo(self.timezone)

        logger.info(
            "revenue_config_initialized",
            extra={
                "currency": self.currency,
                "fee_rate": str(self.fee_rate),
                "fee_source": self.fee_source,
                "page_size": self.page_size,
            },
        )

    @property
    def decimal_places(self) -> int:
        return currency_decimal_places(self.currency)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def interval_for(self, plan_key: str | None) -> BillingInterval | None:
        """Billing interval of a plan key; substring fallback for legacy ids."""
        if not plan_key:
            return None
        configured = self.plan_intervals.get(plan_key)
        if configured is not None:
            return BillingInterval(configured)
        lowered = plan_key.lower()
        if "year" in lowered:
            return BillingInterval.YEAR
        if "month" in lowered:
            return BillingInterval.MONTH
        return None

    @classmethod
    def with_defaults(cls) -> Self:
        """Defaults matching the standard plan catalog."""
        return cls(
            product_vocabulary=("one tap seal", "onetap seal", "sticker"),
            plan_names={
                "monthly": "Monthly plan",
                "yearly": "Yearly plan",
                "starter": "Starter plan",
                "business": "Business plan",
                "business_yearly": "Business plan (yearly)",
                "business_plus": "Business Plus plan",
                "business_plus_yearly": "Business Plus plan (yearly)",
                "enterprise": "Enterprise plan",
            },
            plan_intervals={
                "monthly": "month",
                "yearly": "year",
                "business": "month",
                "business_yearly": "year",
                "business_plus": "month",
                "business_plus_yearly": "year",
            },
        )
