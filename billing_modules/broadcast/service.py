"""
Module: billing_modules.broadcast.service
Responsibility: Resolve a customer target group into a recipient snapshot
    and deliver one message to each recipient, throttled and resumable.
Architecture position: Modules > Broadcast > Services.

Invariants enforced:
    - ``create()`` flushes only; the caller commits it under the
      idempotency guard, so a double-submitted broadcast creates one log.
    - ``run()`` owns its unit of work: progress (next_index, sent and fail
      counts) is committed after every batch, so an interrupted run
      resumes from the last committed batch.
    - A completed broadcast is never sent again.
    - A failed send is counted and logged; it never aborts the run.

Failure modes:
    - InvalidTargetGroupError on an unknown group.
    - InvalidBroadcastContentError on a blank subject or body.
    - BroadcastNotFoundError on an unknown broadcast id.
"""

import time
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    BroadcastNotFoundError,
    InvalidBroadcastContentError,
    InvalidTargetGroupError,
)
from billing_kernel.logging_config import get_logger
from billing_modules.broadcast.config import BroadcastConfig
from billing_modules.broadcast.models import (
    BroadcastStatus,
    BroadcastSummary,
    Recipient,
    TargetGroup,
)
from billing_modules.broadcast.orm import BroadcastLogModel
from billing_modules.broadcast.sender import EmailSender
from billing_modules.subscriptions.config import SubscriptionConfig
from billing_modules.subscriptions.models import (
    BillingInterval,
    SubscriptionStatus,
    TenantRole,
)
from billing_modules.subscriptions.orm import CustomerModel, SubscriptionRecordModel
from billing_modules.subscriptions.state_machine import LIVE_STATUSES

logger = get_logger("services.broadcast")

_LIVE_VALUES = frozenset(s.value for s in LIVE_STATUSES)


class BroadcastService:
    """Creates broadcast logs and drives their delivery."""

    def __init__(
        self,
        session: Session,
        sender: EmailSender,
        subscription_config: SubscriptionConfig,
        config: BroadcastConfig,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session = session
        self._sender = sender
        self._plans = subscription_config
        self._config = config
        self._clock = clock or SystemClock()
        self._sleep = sleep

    def create(
        self,
        subject: str,
        body: str,
        target_group: str,
        actor_id: UUID,
    ) -> BroadcastSummary:
        try:
            group = TargetGroup(target_group)
        except ValueError:
            raise InvalidTargetGroupError(target_group) from None
        if not subject.strip():
            raise InvalidBroadcastContentError("subject")
        if not body.strip():
            raise InvalidBroadcastContentError("body")

        recipients = self.resolve_recipients(group)
        log = BroadcastLogModel(
            subject=subject,
            body=body,
            target_group=group.value,
            recipients=[r.to_dict() for r in recipients],
            total_count=len(recipients),
            batch_size=self._config.batch_size,
            sent_count=0,
            fail_count=0,
            next_index=0,
            status=BroadcastStatus.PENDING.value,
            created_by_id=actor_id,
        )
        self._session.add(log)
        self._session.flush()

        logger.info(
            "broadcast_created",
            extra={
                "broadcast_id": str(log.id),
                "target_group": group.value,
                "recipient_count": len(recipients),
                "actor_id": str(actor_id),
            },
        )
        return log.to_dto()

    def get(self, broadcast_id: UUID) -> BroadcastSummary:
        return self._load(broadcast_id).to_dto()

    def run(self, broadcast_id: UUID) -> BroadcastSummary:
        """
        Send to every remaining recipient, committing after each batch.

        Idempotent on completed broadcasts (returns the summary without
        sending).  An unexpected error marks the log ``failed`` and
        propagates; calling ``run()`` again resumes it.
        """
        log = self._load(broadcast_id)
        if log.status == BroadcastStatus.COMPLETED.value:
            logger.info(
                "broadcast_already_completed",
                extra={"broadcast_id": str(broadcast_id)},
            )
            return log.to_dto()

        if log.started_at is None:
            log.started_at = self._clock.now()
        log.status = BroadcastStatus.RUNNING.value
        log.last_error = None
        self._session.commit()

        logger.info(
            "broadcast_started",
            extra={
                "broadcast_id": str(broadcast_id),
                "next_index": log.next_index,
                "total_count": log.total_count,
            },
        )

        try:
            while log.next_index < log.total_count:
                if log.next_index > 0 and log.next_index % log.batch_size == 0:
                    self._sleep(self._config.batch_delay_seconds)
                self._send_batch(log)
                self._session.commit()
        except Exception as exc:
            self._session.rollback()
            log = self._load(broadcast_id)
            log.status = BroadcastStatus.FAILED.value
            log.last_error = f"{type(exc).__name__}: {exc}"
            self._session.commit()
            logger.exception(
                "broadcast_failed",
                extra={"broadcast_id": str(broadcast_id), "next_index": log.next_index},
            )
            raise

        log.status = BroadcastStatus.COMPLETED.value
        log.completed_at = self._clock.now()
        self._session.commit()

        logger.info(
            "broadcast_completed",
            extra={
                "broadcast_id": str(broadcast_id),
                "sent_count": log.sent_count,
                "fail_count": log.fail_count,
            },
        )
        return log.to_dto()

    def resolve_recipients(self, group: TargetGroup) -> list[Recipient]:
        """Active customers in ``group``, one entry per email address."""
        customers = self._session.execute(
            select(CustomerModel)
            .where(CustomerModel.is_active.is_(True))
            .order_by(CustomerModel.created_at, CustomerModel.email)
        ).scalars().all()

        records = self._session.execute(select(SubscriptionRecordModel)).scalars().all()
        live: dict[UUID, SubscriptionRecordModel] = {}
        has_canceled: set[UUID] = set()
        for record in records:
            if record.status in _LIVE_VALUES:
                live[record.customer_id] = record
            elif record.status == SubscriptionStatus.CANCELED.value:
                has_canceled.add(record.customer_id)

        recipients: list[Recipient] = []
        seen: set[str] = set()
        for customer in customers:
            if not self._in_group(group, customer, live.get(customer.id), customer.id in has_canceled):
                continue
            email = customer.email.strip().lower()
            if email in seen:
                continue
            seen.add(email)
            recipients.append(
                Recipient(customer_id=customer.id, email=customer.email, name=customer.display_name)
            )
        return recipients

    # ------------------------------------------------------------------

    def _in_group(
        self,
        group: TargetGroup,
        customer: CustomerModel,
        record: SubscriptionRecordModel | None,
        has_canceled: bool,
    ) -> bool:
        G = TargetGroup
        if group == G.ALL:
            return True
        if group == G.INACTIVE:
            return record is None
        if group == G.CANCELED:
            return record is None and has_canceled
        if group in (G.ACTIVE, G.TRIALING, G.PAST_DUE):
            return record is not None and record.status == group.value

        if group in (G.CORPORATE, G.CORPORATE_MONTHLY, G.CORPORATE_YEARLY):
            is_admin = (
                customer.tenant_role == TenantRole.ADMIN.value
                and customer.tenant_id is not None
            )
            if not is_admin:
                return False
            if group == G.CORPORATE:
                return True
            wanted = BillingInterval.MONTH if group == G.CORPORATE_MONTHLY else BillingInterval.YEAR
            return record is not None and record.billing_interval == wanted.value

        # individual groups
        if record is None or self._plans.is_corporate(record.plan_id):
            return False
        if group == G.INDIVIDUAL:
            return True
        wanted = BillingInterval.MONTH if group == G.INDIVIDUAL_MONTHLY else BillingInterval.YEAR
        return record.billing_interval == wanted.value

    def _send_batch(self, log: BroadcastLogModel) -> None:
        end = min(log.next_index + log.batch_size, log.total_count)
        start = log.next_index
        for index in range(start, end):
            if index > start:
                self._sleep(self._config.item_delay_seconds)
            recipient = log.recipient_at(index)
            try:
                self._sender.send(recipient.email, log.subject, log.body)
                log.sent_count += 1
            except Exception:
                log.fail_count += 1
                logger.warning(
                    "broadcast_send_failed",
                    extra={
                        "broadcast_id": str(log.id),
                        "recipient": recipient.email,
                        "index": index,
                    },
                    exc_info=True,
                )
            log.next_index = index + 1

        logger.info(
            "broadcast_batch_committed",
            extra={
                "broadcast_id": str(log.id),
                "next_index": log.next_index,
                "sent_count": log.sent_count,
                "fail_count": log.fail_count,
            },
        )

    def _load(self, broadcast_id: UUID) -> BroadcastLogModel:
        log = self._session.get(BroadcastLogModel, broadcast_id)
        if log is None:
            raise BroadcastNotFoundError(str(broadcast_id))
        return log
