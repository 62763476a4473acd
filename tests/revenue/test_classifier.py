"""
Tests for the revenue classifier.

Rule order matters: refunds first, then the explicit category tag, then
physical-goods evidence, then subscription evidence.  Anything without
explicit subscription evidence is excluded.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billing_modules.revenue.classifier import classify_transaction, resolve_plan_label
from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.models import RawTransaction, TransactionCategory
from billing_modules.subscriptions.models import BillingInterval

CREATED = datetime(2024, 3, 10, tzinfo=timezone.utc)


def raw(tx_id="pi_1", amount="1000", description=None, metadata=None, **kwargs) -> RawTransaction:
    return RawTransaction(
        id=tx_id,
        amount=Decimal(amount),
        currency="jpy",
        status="succeeded",
        created_at=CREATED,
        description=description,
        metadata=metadata or {},
        **kwargs,
    )


@pytest.fixture(scope="module")
def config():
    return RevenueConfig.with_defaults()


class TestRules:
    def test_refund_wins_over_subscription_tag(self, config):
        result = classify_transaction(
            raw(metadata={"transaction_category": "subscription"}, refunded=True), config
        )
        assert result.category == TransactionCategory.EXCLUDED_REFUND
        assert not result.is_revenue

    def test_partial_refund_is_excluded(self, config):
        result = classify_transaction(
            raw(metadata={"plan_id": "monthly"}, refunded_amount=Decimal("200")), config
        )
        assert result.category == TransactionCategory.EXCLUDED_REFUND

    def test_subscription_tag_beats_goods_evidence(self, config):
        result = classify_transaction(
            raw(description="Sticker pack", metadata={"transaction_category": "subscription"}),
            config,
        )
        assert result.is_revenue
        assert result.reason == "tagged subscription"

    @pytest.mark.parametrize("tag", ["non_subscription", "one_time", "physical", " Physical "])
    def test_non_subscription_tags(self, config, tag):
        result = classify_transaction(
            raw(metadata={"transaction_category": tag, "plan_id": "monthly"}), config
        )
        assert result.category == TransactionCategory.EXCLUDED_NON_SUBSCRIPTION

    @pytest.mark.parametrize(
        "metadata, description, reason_prefix",
        [
            ({"product_type": "physical", "plan_id": "monthly"}, None, "product type"),
            ({"shipping_fee": "500"}, "Monthly plan", "shipping fee"),
            ({"itemQuantity": "2"}, None, "item quantity"),
            ({}, "OneTap Seal x3 (subscription bonus)", "product vocabulary"),
        ],
    )
    def test_physical_goods_evidence(self, config, metadata, description, reason_prefix):
        result = classify_transaction(raw(metadata=metadata, description=description), config)
        assert result.category == TransactionCategory.EXCLUDED_NON_SUBSCRIPTION
        assert result.reason.startswith(reason_prefix)

    def test_plan_id_is_subscription_evidence(self, config):
        result = classify_transaction(raw(metadata={"planId": "business_yearly"}), config)
        assert result.is_revenue
        assert result.plan_key == "business_yearly"
        assert result.plan_label == "Business plan (yearly)"
        assert result.interval == BillingInterval.YEAR

    def test_keyword_is_subscription_evidence(self, config):
        result = classify_transaction(raw(description="Monthly membership"), config)
        assert result.is_revenue
        assert result.reason == "subscription keyword"
        assert result.plan_key == "unknown"
        assert result.plan_label == "Unknown plan"

    def test_no_evidence_is_excluded(self, config):
        result = classify_transaction(raw(description="Donation"), config)
        assert result.category == TransactionCategory.EXCLUDED_NON_SUBSCRIPTION
        assert result.reason == "no subscription evidence"
        assert result.fee == Decimal("0")


class TestFees:
    def test_estimated_fee_rounded_to_currency(self, config):
        result = classify_transaction(raw(amount="1980", metadata={"plan_id": "monthly"}), config)
        # 1980 * 0.036 = 71.28
        assert result.fee == Decimal("71")
        assert result.net == Decimal("1909")

    def test_actual_fee_used_when_configured(self):
        config = RevenueConfig(fee_source="actual")
        result = classify_transaction(
            raw(metadata={"plan_id": "monthly"}, processor_fee=Decimal("40")), config
        )
        assert result.fee == Decimal("40")

    def test_actual_fee_falls_back_to_estimate(self):
        config = RevenueConfig(fee_source="actual")
        result = classify_transaction(raw(metadata={"plan_id": "monthly"}), config)
        assert result.fee == Decimal("36")


class TestPlanLabels:
    def test_metadata_name_wins(self, config):
        assert resolve_plan_label("monthly", {"plan_name": "Promo"}, config) == "Promo"

    def test_unconfigured_plan(self, config):
        assert resolve_plan_label("gold", {}, config) == "Plan (gold)"


_metadata = st.dictionaries(
    st.sampled_from(["plan_id", "transaction_category", "shipping_fee", "note"]),
    st.sampled_from(["monthly", "subscription", "physical", "500", ""]),
    max_size=3,
)


@given(
    metadata=_metadata,
    description=st.one_of(st.none(), st.sampled_from(["Monthly plan", "Sticker", "Gift"])),
    amount=st.integers(min_value=0, max_value=10_000_000),
    refunded=st.booleans(),
)
def test_classification_is_deterministic_and_fee_bounded(metadata, description, amount, refunded):
    config = RevenueConfig.with_defaults()
    tx = raw(amount=str(amount), description=description, metadata=metadata, refunded=refunded)

    first = classify_transaction(tx, config)
    second = classify_transaction(tx, config)

    assert first == second
    if refunded:
        assert first.category == TransactionCategory.EXCLUDED_REFUND
    if first.is_revenue:
        assert first.fee + first.net == tx.amount
        assert Decimal("0") <= first.fee <= tx.amount
    else:
        assert first.fee == Decimal("0")
