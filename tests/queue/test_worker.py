"""
Tests for QueueWorker over a file-backed database.

Each item runs in its own session, so these tests seed and inspect
through ``session_scope`` on the shared factory.
"""

import time

import pytest
from sqlalchemy import select

from billing_config.schema import QueueConfig
from billing_kernel.db.engine import session_scope
from billing_modules.subscriptions.config import SubscriptionConfig
from billing_modules.subscriptions.orm import CorporateTenantModel, SubscriptionRecordModel
from billing_services._event_types import EventStatus
from billing_services.dispatcher import EventDispatcher, tenant_provision_event_id
from billing_services.event_queue import EventQueue
from billing_services.worker import QueueWorker
from tests.conftest import envelope, make_customer, subscription_object

CONFIG = QueueConfig(max_attempts=2, backoff_base_seconds=30, backoff_cap_seconds=600,
                     drain_batch_size=10)


class Flaky:
    """Dispatcher factory whose first ``failures`` dispatches raise."""

    def __init__(self, clock, failures=0):
        self.clock = clock
        self.failures = failures
        self.calls = 0

    def __call__(self, session):
        dispatcher = EventDispatcher(session, SubscriptionConfig.with_defaults(), CONFIG,
                                     self.clock)
        outer = self

        class _Dispatcher:
            def dispatch(self, event):
                outer.calls += 1
                if outer.calls <= outer.failures:
                    raise RuntimeError("database unavailable")
                return dispatcher.dispatch(event)

        return _Dispatcher()


@pytest.fixture
def seeded(session_factory):
    with session_scope(session_factory) as s:
        make_customer(s, "owner@example.com", processor_customer_id="cus_1")
    return session_factory


def _enqueue(session_factory, clock, event_id, event_type, obj, created=1709280000):
    with session_scope(session_factory) as s:
        EventQueue(s, CONFIG, clock).enqueue(
            event_id, event_type, envelope(event_id, event_type, obj, created)
        )


def _item(session_factory, event_id):
    with session_scope(session_factory) as s:
        return EventQueue(s).get(event_id)


def _worker(session_factory, clock, failures=0, config=CONFIG):
    factory = Flaky(clock, failures)
    return QueueWorker(session_factory, factory, config, clock), factory


class TestTick:
    def test_processes_due_item(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.subscription.created",
                 subscription_object("sub_1", "cus_1", plan_id="monthly"))
        worker, _ = _worker(seeded, clock)

        assert worker.tick() == 1

        item = _item(seeded, "evt_1")
        assert item.status == EventStatus.PROCESSED
        assert item.attempts == 1
        with session_scope(seeded) as s:
            record = s.execute(select(SubscriptionRecordModel)).scalar_one()
            assert record.status == "active"
        assert worker.tick() == 0

    def test_unrouted_item_marked_ignored(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.created", {"id": "cus_9"})
        worker, _ = _worker(seeded, clock)

        worker.tick()

        assert _item(seeded, "evt_1").status == EventStatus.IGNORED

    def test_tenant_follow_up_runs_in_same_drain(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.subscription.created",
                 subscription_object("sub_1", "cus_1", plan_id="business_plus"))
        worker, _ = _worker(seeded, clock)

        assert worker.tick() == 2

        assert _item(seeded, tenant_provision_event_id("evt_1")).status == EventStatus.PROCESSED
        with session_scope(seeded) as s:
            tenant = s.execute(select(CorporateTenantModel)).scalar_one()
            assert tenant.seat_limit == 50

    def test_batch_size_bounds_one_tick(self, seeded, clock):
        for i in range(3):
            _enqueue(seeded, clock, f"evt_{i}", "customer.created", {"id": f"cus_{i}"})
            clock.advance(1)
        worker, _ = _worker(seeded, clock, config=QueueConfig(drain_batch_size=2))

        assert worker.tick() == 2
        assert worker.tick() == 1


class TestFailures:
    def test_failure_rolls_back_and_schedules_retry(self, seeded, clock, captured_logs):
        _enqueue(seeded, clock, "evt_1", "customer.subscription.created",
                 subscription_object("sub_1", "cus_1", plan_id="monthly"))
        worker, _ = _worker(seeded, clock, failures=1)

        assert worker.tick() == 1

        item = _item(seeded, "evt_1")
        assert item.status == EventStatus.FAILED
        assert item.last_error == "RuntimeError: database unavailable"
        assert any(r["message"] == "webhook_event_handler_failed" for r in captured_logs())

        clock.advance(30)
        worker.tick()

        assert _item(seeded, "evt_1").status == EventStatus.PROCESSED
        with session_scope(seeded) as s:
            assert s.execute(select(SubscriptionRecordModel)).scalar_one().status == "active"

    def test_dead_lettered_after_max_attempts(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.subscription.created",
                 subscription_object("sub_1", "cus_1", plan_id="monthly"))
        worker, factory = _worker(seeded, clock, failures=5)

        worker.tick()
        clock.advance(30)
        worker.tick()
        clock.advance(3600)

        assert worker.tick() == 0
        item = _item(seeded, "evt_1")
        assert item.status == EventStatus.DEAD_LETTERED
        assert item.attempts == 2
        assert factory.calls == 2

    def test_one_failure_does_not_block_others(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.created", {"id": "cus_9"})
        clock.advance(1)
        _enqueue(seeded, clock, "evt_2", "customer.created", {"id": "cus_10"})
        worker, _ = _worker(seeded, clock, failures=1)

        assert worker.tick() == 2

        assert _item(seeded, "evt_1").status == EventStatus.FAILED
        assert _item(seeded, "evt_2").status == EventStatus.IGNORED


class TestOutOfOrderDelivery:
    INVOICE = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}

    def _status(self, session_factory):
        with session_scope(session_factory) as s:
            return s.execute(select(SubscriptionRecordModel)).scalar_one().status

    def test_payment_before_created_is_replayed(self, seeded, clock):
        _enqueue(seeded, clock, "evt_pay", "invoice.payment_succeeded", self.INVOICE,
                 created=1709280005)
        clock.advance(1)
        _enqueue(seeded, clock, "evt_new", "customer.subscription.created",
                 subscription_object("sub_1", "cus_1", "incomplete", plan_id="monthly"))
        worker, _ = _worker(seeded, clock)

        assert worker.tick() == 2

        deferred = _item(seeded, "evt_pay")
        assert deferred.status == EventStatus.FAILED
        assert deferred.last_error == "deferred: subscription record not created yet"
        assert self._status(seeded) == "incomplete"

        clock.advance(30)
        assert worker.tick() == 1

        assert _item(seeded, "evt_pay").status == EventStatus.PROCESSED
        assert self._status(seeded) == "active"

    def test_record_that_never_arrives_is_dead_lettered(self, seeded, clock):
        _enqueue(seeded, clock, "evt_pay", "invoice.payment_succeeded", self.INVOICE)
        worker, _ = _worker(seeded, clock)

        worker.tick()
        clock.advance(30)
        worker.tick()

        item = _item(seeded, "evt_pay")
        assert item.status == EventStatus.DEAD_LETTERED
        assert item.attempts == 2


class TestBackgroundThread:
    def test_start_and_stop(self, seeded, clock):
        _enqueue(seeded, clock, "evt_1", "customer.created", {"id": "cus_9"})
        worker, _ = _worker(seeded, clock, config=QueueConfig(poll_interval_seconds=0.05))

        worker.start()
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if _item(seeded, "evt_1").status == EventStatus.IGNORED:
                    break
                time.sleep(0.05)
        finally:
            worker.stop(timeout=5)

        assert _item(seeded, "evt_1").status == EventStatus.IGNORED
        assert not worker.is_running
