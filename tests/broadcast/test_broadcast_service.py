"""
Tests for broadcast email: target groups, throttling, resumable delivery.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from billing_kernel.exceptions import (
    BroadcastNotFoundError,
    ConfigurationError,
    InvalidBroadcastContentError,
    InvalidTargetGroupError,
)
from billing_modules.broadcast.config import BroadcastConfig, SmtpSettings
from billing_modules.broadcast.models import BroadcastStatus, TargetGroup
from billing_modules.broadcast.orm import BroadcastLogModel
from billing_modules.broadcast.sender import SmtpEmailSender
from billing_modules.broadcast.service import BroadcastService
from billing_modules.subscriptions.config import SubscriptionConfig
from tests.conftest import TEST_ACTOR_ID, FakeEmailSender, make_customer, make_subscription


class WorkerStopped(Exception):
    pass


class RecordingSleep:
    """Records delays; raises once on the first delay equal to ``fail_on``."""

    def __init__(self, fail_on=None):
        self.delays: list[float] = []
        self.fail_on = fail_on

    def __call__(self, seconds):
        if self.fail_on is not None and seconds == self.fail_on:
            self.fail_on = None
            raise WorkerStopped("worker stopped")
        self.delays.append(seconds)


@pytest.fixture
def population(session):
    """Customers across every target group."""
    a = make_customer(session, "a@example.com", display_name="Aiko")
    make_subscription(session, a, "sub_a", status="active", plan_id="monthly")
    b = make_customer(session, "b@example.com")
    make_subscription(session, b, "sub_b", status="trialing", plan_id="yearly",
                      billing_interval="year")
    c = make_customer(session, "c@example.com")
    make_subscription(session, c, "sub_c", status="past_due", plan_id="monthly")
    d = make_customer(session, "d@example.com", tenant_role="admin", tenant_id=uuid4())
    make_subscription(session, d, "sub_d", status="active", plan_id="business")
    e = make_customer(session, "e@example.com")
    make_subscription(session, e, "sub_e", status="canceled", plan_id="monthly")
    make_customer(session, "f@example.com")
    make_customer(session, "A@example.com")
    g = make_customer(session, "g@example.com", is_active=False)
    make_subscription(session, g, "sub_g", status="active", plan_id="monthly")
    session.commit()


def _service(session, sender, sleep=None, **config) -> BroadcastService:
    config.setdefault("batch_size", 2)
    config.setdefault("item_delay_seconds", 0)
    config.setdefault("batch_delay_seconds", 0)
    return BroadcastService(
        session,
        sender,
        SubscriptionConfig.with_defaults(),
        BroadcastConfig(**config),
        sleep=sleep or RecordingSleep(),
    )


def _emails(service, group):
    return sorted(r.email.lower() for r in service.resolve_recipients(group))


class TestTargetGroups:
    @pytest.mark.parametrize(
        "group, expected",
        [
            (TargetGroup.ACTIVE, ["a@example.com", "d@example.com"]),
            (TargetGroup.TRIALING, ["b@example.com"]),
            (TargetGroup.PAST_DUE, ["c@example.com"]),
            (TargetGroup.CANCELED, ["e@example.com"]),
            # "a@example.com" here is the upper-case A@example.com without a subscription
            (TargetGroup.INACTIVE, ["a@example.com", "e@example.com", "f@example.com"]),
            (TargetGroup.INDIVIDUAL, ["a@example.com", "b@example.com", "c@example.com"]),
            (TargetGroup.INDIVIDUAL_MONTHLY, ["a@example.com", "c@example.com"]),
            (TargetGroup.INDIVIDUAL_YEARLY, ["b@example.com"]),
            (TargetGroup.CORPORATE, ["d@example.com"]),
            (TargetGroup.CORPORATE_MONTHLY, ["d@example.com"]),
            (TargetGroup.CORPORATE_YEARLY, []),
        ],
    )
    def test_group_membership(self, session, population, email_sender, group, expected):
        assert _emails(_service(session, email_sender), group) == expected

    def test_all_dedupes_emails_and_skips_inactive(self, session, population, email_sender):
        emails = _emails(_service(session, email_sender), TargetGroup.ALL)
        assert emails == [f"{c}@example.com" for c in "abcdef"]

    def test_unknown_group(self, session, email_sender):
        with pytest.raises(InvalidTargetGroupError):
            _service(session, email_sender).create("s", "b", "vip", TEST_ACTOR_ID)

    @pytest.mark.parametrize(
        "subject, body, field",
        [("  ", "body", "subject"), ("News", "\n\t", "body")],
    )
    def test_blank_content(self, session, email_sender, subject, body, field):
        with pytest.raises(InvalidBroadcastContentError) as exc_info:
            _service(session, email_sender).create(subject, body, "all", TEST_ACTOR_ID)
        assert exc_info.value.field == field


class TestRun:
    def test_sends_each_recipient_once_with_throttling(self, session, population, email_sender):
        sleep = RecordingSleep()
        service = _service(session, email_sender, sleep, item_delay_seconds=0.5,
                           batch_delay_seconds=5)
        created = service.create("News", "Hello", "individual", TEST_ACTOR_ID)
        session.commit()

        summary = service.run(created.id)

        assert summary.status == BroadcastStatus.COMPLETED
        assert summary.sent_count == 3
        assert summary.fail_count == 0
        assert summary.remaining == 0
        assert sorted(email_sender.recipients) == ["a@example.com", "b@example.com", "c@example.com"]
        # two items in batch one, one in batch two
        assert sleep.delays == [0.5, 5]

    def test_failed_sends_are_counted_not_fatal(self, session, population, captured_logs):
        sender = FakeEmailSender(fail_for={"b@example.com"})
        service = _service(session, sender)
        created = service.create("s", "b", "individual", TEST_ACTOR_ID)
        session.commit()

        summary = service.run(created.id)

        assert summary.status == BroadcastStatus.COMPLETED
        assert summary.sent_count == 2
        assert summary.fail_count == 1
        assert summary.sent_count + summary.fail_count == summary.next_index
        assert any(r["message"] == "broadcast_send_failed" for r in captured_logs())

    def test_interrupted_run_resumes_without_resending(self, session, population, email_sender):
        service = _service(session, email_sender, RecordingSleep(fail_on=5),
                           batch_delay_seconds=5)
        created = service.create("s", "b", "all", TEST_ACTOR_ID)
        session.commit()

        with pytest.raises(WorkerStopped):
            service.run(created.id)

        failed = service.get(created.id)
        assert failed.status == BroadcastStatus.FAILED
        assert failed.next_index == 2
        assert len(email_sender.sent) == 2

        summary = service.run(created.id)

        assert summary.status == BroadcastStatus.COMPLETED
        assert summary.sent_count == 6
        assert len(email_sender.recipients) == 6
        assert len(set(email_sender.recipients)) == 6

    def test_completed_broadcast_not_resent(self, session, population, email_sender):
        service = _service(session, email_sender)
        created = service.create("s", "b", "active", TEST_ACTOR_ID)
        session.commit()
        service.run(created.id)

        again = service.run(created.id)

        assert again.status == BroadcastStatus.COMPLETED
        assert len(email_sender.sent) == 2

    def test_recipient_snapshot_is_fixed_at_creation(self, session, population, email_sender):
        service = _service(session, email_sender)
        created = service.create("s", "b", "trialing", TEST_ACTOR_ID)
        session.commit()

        late = make_customer(session, "late@example.com")
        make_subscription(session, late, "sub_late", status="trialing", plan_id="monthly")
        session.commit()
        service.run(created.id)

        assert email_sender.recipients == ["b@example.com"]
        log = session.execute(select(BroadcastLogModel)).scalar_one()
        assert log.total_count == 1

    def test_empty_group_completes(self, session, population, email_sender):
        service = _service(session, email_sender)
        created = service.create("s", "b", "corporate_yearly", TEST_ACTOR_ID)
        session.commit()
        assert service.run(created.id).status == BroadcastStatus.COMPLETED
        assert email_sender.sent == []

    def test_unknown_broadcast(self, session, email_sender):
        with pytest.raises(BroadcastNotFoundError):
            _service(session, email_sender).run(uuid4())


class TestContent:
    def test_braces_sent_verbatim(self, session, population, email_sender):
        body = 'Use code {SAVE10 or send {"a": 1} to {name}'
        service = _service(session, email_sender)
        created = service.create("Coupon {x}", body, "active", TEST_ACTOR_ID)
        session.commit()

        summary = service.run(created.id)

        assert summary.sent_count == 2
        assert summary.fail_count == 0
        assert {(subject, text) for _, subject, text in email_sender.sent} == {
            ("Coupon {x}", body),
        }


class TestSmtpSender:
    def test_tls_without_credentials_refused(self):
        sender = SmtpEmailSender(SmtpSettings(use_tls=True))
        with pytest.raises(ConfigurationError) as exc_info:
            sender.send("x@example.com", "s", "b")
        assert exc_info.value.field == "broadcast.smtp"

    def test_config_accepts_smtp_mapping(self):
        config = BroadcastConfig(smtp={"host": "mail.example.com", "port": 2525})
        assert config.smtp.host == "mail.example.com"
        assert not config.smtp.has_credentials

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            BroadcastConfig(item_delay_seconds=-1)
