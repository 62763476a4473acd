"""
Tests for the settlement lifecycle: draft -> finalized -> paid.

A finalized month is never recomputed; payment requires exactly
finalized; finalization refuses a partial revenue fetch.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from billing_kernel.exceptions import (
    DegradedRevenueError,
    InvalidSettlementTransitionError,
    SettlementAlreadyFinalizedError,
    SettlementNotFinalizedError,
    SettlementNotFoundError,
)
from billing_modules.allocation.config import AllocationConfig
from billing_modules.allocation.orm import ExpenseRecordModel
from billing_modules.allocation.service import ProfitAllocationService
from billing_modules.allocation.sources import SqlAdjustmentSource, SqlExpenseLedger
from billing_modules.revenue.config import RevenueConfig
from billing_modules.revenue.fetcher import TransactionFetcher
from billing_modules.revenue.service import RevenueReconciliationService
from billing_modules.settlement.models import SettlementStatus
from billing_modules.settlement.orm import MonthlySettlementModel
from billing_modules.settlement.service import SettlementService
from tests.conftest import TEST_ACTOR_ID, FakeProcessorClient, payment_intent, transient

OTHER_ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000bb")


@pytest.fixture
def client():
    return FakeProcessorClient([
        payment_intent("pi_1", 100000, datetime(2024, 3, 10, tzinfo=timezone.utc),
                       {"plan_id": "business_plus"}),
    ])


@pytest.fixture
def settlements(session, client, clock):
    revenue_config = RevenueConfig.with_defaults()
    allocation = ProfitAllocationService(
        RevenueReconciliationService(
            TransactionFetcher(client, revenue_config, sleep=lambda _: None), revenue_config
        ),
        SqlExpenseLedger(session),
        SqlAdjustmentSource(session),
        AllocationConfig.with_defaults(),
    )
    return SettlementService(session, allocation, clock)


def _expense(session, amount, day=date(2024, 3, 5)):
    session.add(ExpenseRecordModel(
        record_date=day, amount=Decimal(amount), category="hosting", approval_status="approved",
    ))
    session.flush()


class TestDraft:
    def test_save_draft(self, settlements, session):
        _expense(session, "20000")

        snap = settlements.save_draft(2024, 3, TEST_ACTOR_ID)

        assert snap.status == SettlementStatus.DRAFT
        assert snap.net_profit == Decimal("76400")
        assert snap.company_share == Decimal("30560")
        assert {s.contractor_key for s in snap.shares} == {"kensei", "yoshitsune"}
        assert all(s.allocation == Decimal("22920") for s in snap.shares)
        assert snap.can_finalize and not snap.can_mark_paid

    def test_redraft_refreshes_figures(self, settlements, session):
        settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        _expense(session, "20000")

        snap = settlements.save_draft(2024, 3, OTHER_ACTOR_ID)

        assert snap.net_profit == Decimal("76400")
        assert len(snap.shares) == 2
        assert session.query(MonthlySettlementModel).count() == 1

    def test_draft_allowed_on_partial_revenue(self, settlements, client):
        client.errors = {i: transient() for i in range(4)}
        snap = settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        assert snap.total_revenue == Decimal("0")

    def test_get_missing(self, settlements):
        assert settlements.get_settlement(2024, 3) is None


class TestFinalize:
    def test_finalize_stamps_actor_and_time(self, settlements, clock):
        settlements.save_draft(2024, 3, TEST_ACTOR_ID)

        snap = settlements.finalize_settlement(2024, 3, OTHER_ACTOR_ID)

        assert snap.status == SettlementStatus.FINALIZED
        assert snap.finalized_by_id == OTHER_ACTOR_ID
        assert snap.finalized_at == clock.now()
        assert snap.can_mark_paid

    def test_finalize_without_draft(self, settlements):
        snap = settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        assert snap.status == SettlementStatus.FINALIZED

    def test_second_finalize_rejected(self, settlements):
        settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        with pytest.raises(SettlementAlreadyFinalizedError) as exc_info:
            settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        assert exc_info.value.status == "finalized"

    def test_finalized_month_is_not_recomputed(self, settlements, session):
        settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        _expense(session, "50000")

        with pytest.raises(SettlementAlreadyFinalizedError):
            settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        assert settlements.get_settlement(2024, 3).total_expenses == Decimal("0")

    def test_degraded_revenue_refused(self, settlements, client, captured_logs):
        client.errors = {i: transient() for i in range(4)}

        with pytest.raises(DegradedRevenueError) as exc_info:
            settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)

        assert exc_info.value.error_count == 1
        assert settlements.get_settlement(2024, 3) is None
        assert any(r["message"] == "settlement_finalize_refused_degraded" for r in captured_logs())


class TestPayment:
    def test_record_payment(self, settlements, clock):
        settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        clock.advance(3600)

        snap = settlements.record_payment(2024, 3, OTHER_ACTOR_ID)

        assert snap.status == SettlementStatus.PAID
        assert snap.paid_by_id == OTHER_ACTOR_ID
        assert snap.paid_at == clock.now()
        assert snap.finalized_by_id == TEST_ACTOR_ID

    def test_payment_needs_settlement(self, settlements):
        with pytest.raises(SettlementNotFoundError):
            settlements.record_payment(2024, 3, TEST_ACTOR_ID)

    def test_payment_needs_finalized(self, settlements):
        settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        with pytest.raises(SettlementNotFinalizedError) as exc_info:
            settlements.record_payment(2024, 3, TEST_ACTOR_ID)
        assert exc_info.value.status == "draft"

    def test_paid_twice_rejected(self, settlements):
        settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        settlements.record_payment(2024, 3, TEST_ACTOR_ID)
        with pytest.raises(SettlementNotFinalizedError) as exc_info:
            settlements.record_payment(2024, 3, TEST_ACTOR_ID)
        assert exc_info.value.status == "paid"

    def test_to_dict(self, settlements):
        data = settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID).to_dict()
        assert data["status"] == "finalized"
        assert len(data["shares"]) == 2


class TestStatusValidator:
    def test_regression_rejected(self, settlements, session):
        settlements.finalize_settlement(2024, 3, TEST_ACTOR_ID)
        row = session.query(MonthlySettlementModel).one()
        with pytest.raises(InvalidSettlementTransitionError):
            row.status = SettlementStatus.DRAFT.value

    def test_skip_rejected(self, settlements, session):
        settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        row = session.query(MonthlySettlementModel).one()
        with pytest.raises(InvalidSettlementTransitionError) as exc_info:
            row.status = SettlementStatus.PAID.value
        assert exc_info.value.from_status == "draft"

    def test_unknown_status_rejected(self, settlements, session):
        settlements.save_draft(2024, 3, TEST_ACTOR_ID)
        row = session.query(MonthlySettlementModel).one()
        with pytest.raises(InvalidSettlementTransitionError):
            row.status = "void"
