"""
Tests for the pure profit allocation engine.

Conservation: company share + unallocated pool + contractor shares equals
net profit exactly, for any inputs.  Allocations never exceed the pool.
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billing_kernel.exceptions import ContractorConfigurationError, InvalidAdjustmentError
from billing_modules.allocation.config import AllocationConfig
from billing_modules.allocation.engine import compute_allocation
from billing_modules.allocation.models import (
    AllocationInputs,
    ApprovedAdjustment,
    ContractorDefinition,
)

POOL = Decimal("60")
CONTRACTORS = AllocationConfig.with_defaults().contractors


def _inputs(revenue="100000", fees="3600", expenses="20000", **kwargs) -> AllocationInputs:
    return AllocationInputs(
        year=2024,
        month=3,
        total_revenue=Decimal(revenue),
        total_fees=Decimal(fees),
        total_expenses=Decimal(expenses),
        contractors=kwargs.pop("contractors", CONTRACTORS),
        **kwargs,
    )


def _reduce(key, percent, reason="took time off") -> ApprovedAdjustment:
    return ApprovedAdjustment(key, Decimal("30"), Decimal(percent), reason)


class TestDefaultSplit:
    def test_worked_example(self):
        result = compute_allocation(_inputs(), POOL)

        assert result.gross_profit == Decimal("96400")
        assert result.net_profit == Decimal("76400")
        assert result.contractor_share_pool == Decimal("45840")
        assert result.company_share == Decimal("30560")
        assert result.for_contractor("yoshitsune").allocation == Decimal("22920")
        assert result.for_contractor("kensei").allocation == Decimal("22920")
        assert result.unallocated_pool == Decimal("0")
        assert result.company_total == Decimal("30560")
        assert not result.has_adjustments

    def test_reimbursements_paid_on_top(self):
        result = compute_allocation(
            _inputs(reimbursements={"kensei": Decimal("4800")}), POOL
        )
        kensei = result.for_contractor("kensei")
        assert kensei.allocation == Decimal("22920")
        assert kensei.reimbursement == Decimal("4800")
        assert kensei.total_payment == Decimal("27720")
        assert result.for_contractor("yoshitsune").reimbursement == Decimal("0")
        assert result.total_reimbursements == Decimal("4800")

    def test_odd_pool_rounds_down_and_company_keeps_remainder(self):
        # net 1001 -> pool 600.6 -> 601; each 300.5 -> 300
        result = compute_allocation(_inputs(revenue="1001", fees="0", expenses="0"), POOL)

        assert result.contractor_share_pool == Decimal("601")
        assert result.total_contractor_share == Decimal("600")
        assert result.unallocated_pool == Decimal("1")
        assert result.company_total == Decimal("401")

    def test_loss_month(self):
        result = compute_allocation(_inputs(revenue="10000", fees="360", expenses="20000"), POOL)

        assert result.net_profit == Decimal("-10360")
        assert result.company_share + result.unallocated_pool + result.total_contractor_share \
            == result.net_profit

    def test_loss_month_truncates_toward_zero(self):
        # net -1001 -> pool -600.6 -> -601; each -300.5 -> -300
        result = compute_allocation(_inputs(revenue="0", fees="0", expenses="1001"), POOL)

        assert result.contractor_share_pool == Decimal("-601")
        assert result.for_contractor("kensei").allocation == Decimal("-300")
        assert result.total_contractor_share == Decimal("-600")
        assert result.unallocated_pool == Decimal("-1")
        assert result.company_share + result.unallocated_pool == Decimal("-401")

    def test_two_decimal_currency(self):
        result = compute_allocation(
            _inputs(revenue="100.01", fees="3.60", expenses="0"), POOL, decimal_places=2
        )
        assert result.contractor_share_pool == Decimal("57.85")
        assert result.for_contractor("kensei").allocation == Decimal("28.92")
        assert result.unallocated_pool == Decimal("0.01")

    def test_to_dict_carries_all_figures(self):
        data = compute_allocation(_inputs(), POOL).to_dict()
        assert data["company_total"] == Decimal("30560")
        assert [c["contractor_key"] for c in data["contractors"]] == ["yoshitsune", "kensei"]


class TestAdjustments:
    def test_adjustment_changes_only_that_contractor(self):
        result = compute_allocation(
            _inputs(adjustments={"yoshitsune": _reduce("yoshitsune", "20")}), POOL
        )

        yoshitsune = result.for_contractor("yoshitsune")
        kensei = result.for_contractor("kensei")
        assert yoshitsune.effective_percent == Decimal("20")
        assert yoshitsune.allocation == Decimal("15280")
        assert yoshitsune.adjusted and yoshitsune.adjustment_reason == "took time off"
        assert kensei.effective_percent == Decimal("30")
        assert kensei.allocation == Decimal("22920")
        assert not kensei.adjusted
        assert result.unallocated_pool == Decimal("7640")
        assert result.has_adjustments

    def test_percent_above_pool_rejected(self):
        with pytest.raises(InvalidAdjustmentError) as exc_info:
            compute_allocation(
                _inputs(adjustments={"kensei": _reduce("kensei", "61")}), POOL
            )
        assert exc_info.value.contractor_key == "kensei"

    def test_negative_percent_rejected(self):
        with pytest.raises(InvalidAdjustmentError):
            compute_allocation(_inputs(adjustments={"kensei": _reduce("kensei", "-1")}), POOL)

    def test_sum_above_pool_rejected(self):
        with pytest.raises(InvalidAdjustmentError) as exc_info:
            compute_allocation(_inputs(adjustments={"kensei": _reduce("kensei", "40")}), POOL)
        assert exc_info.value.contractor_key == "kensei"

    def test_zero_percent_allowed(self):
        result = compute_allocation(_inputs(adjustments={"kensei": _reduce("kensei", "0")}), POOL)
        assert result.for_contractor("kensei").allocation == Decimal("0")


class TestConfig:
    def test_percents_must_sum_to_pool(self):
        with pytest.raises(ContractorConfigurationError):
            AllocationConfig(
                pool_percent=Decimal("60"),
                contractors=(ContractorDefinition("a", "A", Decimal("30")),),
            )

    def test_duplicate_keys(self):
        c = ContractorDefinition("a", "A", Decimal("30"))
        with pytest.raises(ContractorConfigurationError):
            AllocationConfig(pool_percent=Decimal("60"), contractors=(c, c))

    def test_contractor_lookup(self):
        config = AllocationConfig.with_defaults()
        assert config.contractor("kensei").default_percent == Decimal("30")
        assert config.contractor("nobody") is None


_amounts = st.decimals(min_value=0, max_value=10_000_000, places=0, allow_nan=False,
                       allow_infinity=False)


@given(
    revenue=_amounts,
    fee_ratio=st.integers(min_value=0, max_value=10),
    expenses=_amounts,
    reduced=st.integers(min_value=0, max_value=30),
)
def test_allocation_conserves_net_profit(revenue, fee_ratio, expenses, reduced):
    fees = (revenue * fee_ratio / 100).quantize(Decimal("1"))
    inputs = AllocationInputs(
        year=2024,
        month=3,
        total_revenue=revenue,
        total_fees=fees,
        total_expenses=expenses,
        contractors=CONTRACTORS,
        adjustments={"kensei": _reduce("kensei", str(reduced))},
    )

    result = compute_allocation(inputs, POOL)

    assert (
        result.company_share + result.unallocated_pool + result.total_contractor_share
        == result.net_profit
    )
    assert result.total_contractor_share + result.unallocated_pool == result.contractor_share_pool
    for c in result.contractors:
        assert abs(c.allocation) <= abs(result.contractor_share_pool)
