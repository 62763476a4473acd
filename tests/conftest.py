"""
Pytest fixtures for the billing pipeline test suite.

Provides:
- In-memory SQLite sessions for single-session service tests
- A file-backed SQLite session factory for tests that need several
  sessions or threads (queue worker, admin operations, API)
- Deterministic clock, fake payment processor and fake email sender
- Test data builders for customers, subscription records and webhooks
"""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from io import StringIO
from typing import Any
from uuid import UUID

import pytest

from billing_config.schema import BillingConfig, ProcessorConfig, QueueConfig
from billing_kernel.db.engine import (
    create_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.exceptions import TransientProcessorError
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules.broadcast.config import BroadcastConfig
from billing_modules.revenue.fetcher import ChargeInfo, ProcessorPage
from billing_modules.subscriptions.orm import CustomerModel, SubscriptionRecordModel

# Test actor ID for all administrative operations
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000aa")

WEBHOOK_SECRET = "whsec_test_secret"

START_TIME = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "settlement_finalized" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def session():
    """One session over a fresh in-memory database."""
    init_engine_from_url("sqlite://")
    create_tables()
    s = get_session()
    yield s
    s.rollback()
    s.close()
    reset_engine()


@pytest.fixture
def session_factory(tmp_path):
    """
    Session factory over a fresh file-backed database.

    Use this (never together with ``session``) when the code under test
    opens its own sessions.  Seed and inspect through ``session_scope`` so
    no read transaction is left open while the code under test writes.
    """
    init_engine_from_url(f"sqlite:///{tmp_path / 'billing.db'}")
    create_tables()
    yield get_session_factory()
    reset_engine()


@pytest.fixture
def clock():
    return DeterministicClock(START_TIME)


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def billing_config() -> BillingConfig:
    """Default configuration with a webhook secret and no throttling delays."""
    return BillingConfig(
        processor=ProcessorConfig(api_key="sk_test_key", webhook_secret=WEBHOOK_SECRET),
        queue=QueueConfig(max_attempts=3, backoff_base_seconds=30, backoff_cap_seconds=600),
        broadcast=BroadcastConfig(batch_size=2, item_delay_seconds=0, batch_delay_seconds=0),
    )


# =============================================================================
# Fakes
# =============================================================================


class FakeProcessorClient:
    """
    In-memory ProcessorClient.

    ``errors`` maps a 0-based list call number to the exception that call
    raises, so retries and mid-run failures can be scripted.
    """

    def __init__(self, payment_intents=(), charges=None):
        self.payment_intents: list[dict[str, Any]] = list(payment_intents)
        self.charges: dict[str, ChargeInfo] = dict(charges or {})
        self.errors: dict[int, Exception] = {}
        self.list_calls: list[str | None] = []

    def list_payment_intents(self, created_gte, created_lt, limit, starting_after):
        call = len(self.list_calls)
        self.list_calls.append(starting_after)
        if call in self.errors:
            raise self.errors[call]

        items = [
            pi for pi in self.payment_intents
            if created_gte <= pi["created"] < created_lt
        ]
        start = 0
        if starting_after:
            start = [pi["id"] for pi in items].index(starting_after) + 1
        return ProcessorPage(
            items=items[start:start + limit],
            has_more=start + limit < len(items),
        )

    def get_charge(self, payment_intent_id):
        return self.charges.get(payment_intent_id)


def transient(message: str = "rate limited") -> TransientProcessorError:
    return TransientProcessorError(message, operation="list_payment_intents")


def payment_intent(
    pi_id: str,
    amount: int,
    created: datetime,
    metadata: dict[str, str] | None = None,
    description: str | None = None,
    status: str = "succeeded",
    currency: str = "jpy",
) -> dict[str, Any]:
    return {
        "id": pi_id,
        "amount": amount,
        "amount_received": amount,
        "currency": currency,
        "status": status,
        "created": int(created.timestamp()),
        "metadata": metadata or {},
        "description": description,
    }


class FakeEmailSender:
    """Records sent messages; addresses in ``fail_for`` raise on send."""

    def __init__(self, fail_for=()):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for = set(fail_for)

    def send(self, to: str, subject: str, body: str) -> None:
        if to in self.fail_for:
            raise ConnectionError(f"mailbox unavailable: {to}")
        self.sent.append((to, subject, body))

    @property
    def recipients(self) -> list[str]:
        return [to for to, _, _ in self.sent]


@pytest.fixture
def processor_client():
    return FakeProcessorClient()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


# =============================================================================
# Builders
# =============================================================================


def make_customer(
    session,
    email: str,
    processor_customer_id: str | None = None,
    display_name: str | None = None,
    **kwargs: Any,
) -> CustomerModel:
    customer = CustomerModel(
        email=email,
        processor_customer_id=processor_customer_id,
        display_name=display_name,
        **kwargs,
    )
    session.add(customer)
    session.flush()
    return customer


def make_subscription(
    session,
    customer: CustomerModel,
    processor_subscription_id: str,
    status: str = "active",
    plan_id: str = "monthly",
    billing_interval: str = "month",
    **kwargs: Any,
) -> SubscriptionRecordModel:
    record = SubscriptionRecordModel(
        customer_id=customer.id,
        processor_subscription_id=processor_subscription_id,
        processor_customer_id=customer.processor_customer_id,
        status=status,
        plan_id=plan_id,
        billing_interval=billing_interval,
        **kwargs,
    )
    session.add(record)
    session.flush()
    return record


def subscription_object(
    sub_id: str,
    customer_id: str,
    status: str = "active",
    price_id: str | None = None,
    plan_id: str | None = None,
    interval: str = "month",
    **fields: Any,
) -> dict[str, Any]:
    """A processor subscription object as it appears in webhook payloads."""
    obj: dict[str, Any] = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "items": {
            "data": [
                {
                    "price": {
                        "id": price_id or f"price_{interval}",
                        "recurring": {"interval": interval},
                    },
                    "current_period_start": 1709251200,
                    "current_period_end": 1711929600,
                }
            ]
        },
        "metadata": {"plan_id": plan_id} if plan_id else {},
        "cancel_at_period_end": False,
    }
    obj.update(fields)
    return obj


def envelope(event_id: str, event_type: str, obj: dict[str, Any], created: int) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a processor signature header for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
