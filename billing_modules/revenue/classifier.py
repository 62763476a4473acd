"""
Revenue classifier (pure).

Rules, first match wins:

    1. refunded in whole or part            -> excluded_refund
    2. explicit category tag                -> as tagged
    3. physical-goods / one-time evidence   -> excluded_non_subscription
    4. plan id or subscription keyword      -> subscription
    5. anything else                        -> excluded_non_subscription

Only explicit evidence counts as revenue.  The keyword heuristics in
rules 3 and 4 exist for charges created before the category tag.
"""

from collections.abc import Iterable

from billing_kernel.db.types import round_money
from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.models import (
    ClassifiedTransaction,
    RawTransaction,
    TransactionCategory,
)

UNKNOWN_PLAN_KEY = "unknown"
UNKNOWN_PLAN_LABEL = "Unknown plan"

_TAG_SUBSCRIPTION = frozenset({"subscription"})
_TAG_NON_SUBSCRIPTION = frozenset({"non_subscription", "one_time", "physical"})


def classify_transactions(
    transactions: Iterable[RawTransaction],
    config: RevenueConfig,
) -> tuple[ClassifiedTransaction, ...]:
    return tuple(classify_transaction(t, config) for t in transactions)


def classify_transaction(raw: RawTransaction, config: RevenueConfig) -> ClassifiedTransaction:
    """Classify one transaction.  Deterministic; no I/O."""
    if raw.refunded or raw.refunded_amount > 0:
        return _excluded(raw, TransactionCategory.EXCLUDED_REFUND, "refunded")

    tag = (raw.metadata.get(config.category_tag_key) or "").strip().lower()
    if tag in _TAG_SUBSCRIPTION:
        return _subscription(raw, config, "tagged subscription")
    if tag in _TAG_NON_SUBSCRIPTION:
        return _excluded(raw, TransactionCategory.EXCLUDED_NON_SUBSCRIPTION, f"tagged {tag}")

    goods_reason = _physical_goods_evidence(raw, config)
    if goods_reason is not None:
        return _excluded(raw, TransactionCategory.EXCLUDED_NON_SUBSCRIPTION, goods_reason)

    if _first_value(raw.metadata, config.plan_id_keys):
        return _subscription(raw, config, "plan id in metadata")
    if _has_subscription_keyword(raw, config):
        return _subscription(raw, config, "subscription keyword")

    return _excluded(
        raw, TransactionCategory.EXCLUDED_NON_SUBSCRIPTION, "no subscription evidence"
    )


def resolve_plan_label(plan_key: str, metadata: dict[str, str], config: RevenueConfig) -> str:
    explicit = _first_value(metadata, config.plan_name_keys)
    if explicit:
        return explicit
    if plan_key in config.plan_names:
        return config.plan_names[plan_key]
    if plan_key == UNKNOWN_PLAN_KEY:
        return UNKNOWN_PLAN_LABEL
    return f"Plan ({plan_key})"


def _subscription(raw: RawTransaction, config: RevenueConfig, reason: str) -> ClassifiedTransaction:
    plan_key = _first_value(raw.metadata, config.plan_id_keys) or UNKNOWN_PLAN_KEY
    if config.fee_source == "actual" and raw.processor_fee is not None:
        fee = raw.processor_fee
    else:
        fee = round_money(raw.amount * config.fee_rate, config.decimal_places)
    return ClassifiedTransaction(
        raw=raw,
        category=TransactionCategory.SUBSCRIPTION,
        reason=reason,
        plan_key=plan_key,
        plan_label=resolve_plan_label(plan_key, raw.metadata, config),
        interval=config.interval_for(plan_key),
        fee=fee,
        net=raw.amount - fee,
    )


def _excluded(raw: RawTransaction, category: TransactionCategory, reason: str) -> ClassifiedTransaction:
    return ClassifiedTransaction(raw=raw, category=category, reason=reason)


def _physical_goods_evidence(raw: RawTransaction, config: RevenueConfig) -> str | None:
    product_type = (_first_value(raw.metadata, config.product_type_keys) or "").lower()
    if product_type and product_type in {p.lower() for p in config.physical_product_types}:
        return f"product type {product_type}"
    if any(key in raw.metadata for key in config.shipping_fee_keys):
        return "shipping fee present"
    if any(key in raw.metadata for key in config.quantity_keys):
        return "item quantity present"
    description = (raw.description or "").lower()
    for term in config.product_vocabulary:
        if term.lower() in description:
            return f"product vocabulary match: {term}"
    return None


def _has_subscription_keyword(raw: RawTransaction, config: RevenueConfig) -> bool:
    haystacks = [(raw.description or "").lower()]
    haystacks.extend(str(v).lower() for v in raw.metadata.values())
    return any(
        keyword.lower() in text
        for keyword in config.subscription_keywords
        for text in haystacks
    )


def _first_value(metadata: dict[str, str], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None
