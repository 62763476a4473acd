"""
Module: billing_services.event_queue
Responsibility: Durable, at-least-once queue of processor notifications
    (and internal follow-ups) keyed by event id.
Architecture position: Services.  Used by the webhook intake (enqueue),
    the queue worker (claim / mark) and the admin surface (listing,
    dead-letter requeue).  Flushes only.

Invariants enforced:
    - One row per event id; re-delivery of the same notification is a
      no-op that reports the existing status.
    - A claim is exclusive: it is taken with a conditional UPDATE on the
      row's (status, attempts), so two workers can never both win it.
    - A claim carries a lease; an item whose worker died is reclaimed when
      the lease expires.
    - Failures back off exponentially and dead-letter after max_attempts.

Audit relevance:
    Every transition is logged with the event id, attempt number and error.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_config.schema import QueueConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger
from billing_kernel.utils.hashing import hash_payload
from billing_services._event_types import (
    EnqueueResult,
    EventPage,
    EventStatus,
    QueuedEvent,
)
from billing_services.orm import WebhookEventModel

logger = get_logger("services.event_queue")

_RETRYABLE = (EventStatus.PENDING.value, EventStatus.FAILED.value)

MAX_ERROR_LENGTH = 2000


def backoff_delay(attempts: int, base_seconds: float, cap_seconds: float) -> float:
    """Seconds to wait before the next attempt after ``attempts`` failures."""
    if attempts < 1:
        return 0.0
    return min(cap_seconds, base_seconds * (2 ** (attempts - 1)))


class EventQueue:
    """Queue operations over ``webhook_events``."""

    def __init__(
        self,
        session: Session,
        config: QueueConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._config = config or QueueConfig()
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
    ) -> EnqueueResult:
        existing = self._by_event_id(event_id)
        if existing is not None:
            logger.info(
                "webhook_event_duplicate",
                extra={"event_id": event_id, "status": existing.status},
            )
            return EnqueueResult(event_id, False, EventStatus(existing.status))

        now = self._clock.now()
        row = WebhookEventModel(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            payload_hash=hash_payload(payload),
            status=EventStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self._config.max_attempts,
            received_at=now,
            next_attempt_at=now,
        )
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert.
            winner = self._by_event_id(event_id)
            status = EventStatus(winner.status) if winner else EventStatus.PENDING
            logger.info(
                "webhook_event_duplicate",
                extra={"event_id": event_id, "status": status.value},
            )
            return EnqueueResult(event_id, False, status)

        logger.info(
            "webhook_event_enqueued",
            extra={"event_id": event_id, "event_type": event_type},
        )
        return EnqueueResult(event_id, True, EventStatus.PENDING)

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def claim_next(self) -> QueuedEvent | None:
        """Lease the oldest due item, or return None when nothing is due."""
        now = self._clock.now()
        due = or_(
            and_(
                WebhookEventModel.status.in_(_RETRYABLE),
                WebhookEventModel.next_attempt_at <= now,
            ),
            and_(
                WebhookEventModel.status == EventStatus.PROCESSING.value,
                WebhookEventModel.lease_expires_at <= now,
            ),
        )
        candidates = self._session.execute(
            select(WebhookEventModel.id, WebhookEventModel.status, WebhookEventModel.attempts)
            .where(due)
            .order_by(WebhookEventModel.next_attempt_at, WebhookEventModel.received_at)
            .limit(10)
            .with_for_update(skip_locked=True)
        ).all()

        lease_until = now + timedelta(seconds=self._config.lease_seconds)
        for row_id, status, attempts in candidates:
            result = self._session.execute(
                update(WebhookEventModel)
                .where(
                    WebhookEventModel.id == row_id,
                    WebhookEventModel.status == status,
                    WebhookEventModel.attempts == attempts,
                )
                .values(
                    status=EventStatus.PROCESSING.value,
                    attempts=attempts + 1,
                    lease_expires_at=lease_until,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue

            row = self._session.get(WebhookEventModel, row_id, populate_existing=True)
            if status == EventStatus.PROCESSING.value:
                logger.warning(
                    "webhook_event_lease_reclaimed",
                    extra={"event_id": row.event_id, "attempt": row.attempts},
                )
            logger.info(
                "webhook_event_claimed",
                extra={
                    "event_id": row.event_id,
                    "event_type": row.event_type,
                    "attempt": row.attempts,
                },
            )
            return row.to_dto()
        return None

    def mark_processed(self, row_id: UUID, note: str | None = None) -> None:
        row = self._get(row_id)
        row.status = EventStatus.PROCESSED.value
        row.processed_at = self._clock.now()
        row.lease_expires_at = None
        row.last_error = None
        row.result_note = note
        self._session.flush()
        logger.info(
            "webhook_event_processed",
            extra={"event_id": row.event_id, "attempt": row.attempts, "note": note},
        )

    def mark_ignored(self, row_id: UUID, reason: str) -> None:
        row = self._get(row_id)
        row.status = EventStatus.IGNORED.value
        row.processed_at = self._clock.now()
        row.lease_expires_at = None
        row.result_note = reason
        self._session.flush()
        logger.info(
            "webhook_event_ignored",
            extra={"event_id": row.event_id, "event_type": row.event_type, "reason": reason},
        )

    def mark_failed(self, row_id: UUID, error: str) -> EventStatus:
        """
        Record a failed attempt: reschedule with backoff, or dead-letter
        when the attempt budget is spent.  Returns the new status.
        """
        row = self._get(row_id)
        now = self._clock.now()
        row.last_error = error[:MAX_ERROR_LENGTH]
        row.lease_expires_at = None

        if row.attempts >= row.max_attempts:
            row.status = EventStatus.DEAD_LETTERED.value
            self._session.flush()
            logger.error(
                "webhook_event_dead_lettered",
                extra={
                    "event_id": row.event_id,
                    "event_type": row.event_type,
                    "attempts": row.attempts,
                    "error": row.last_error,
                },
            )
            return EventStatus.DEAD_LETTERED

        delay = backoff_delay(
            row.attempts,
            self._config.backoff_base_seconds,
            self._config.backoff_cap_seconds,
        )
        row.status = EventStatus.FAILED.value
        row.next_attempt_at = now + timedelta(seconds=delay)
        self._session.flush()
        logger.warning(
            "webhook_event_retry_scheduled",
            extra={
                "event_id": row.event_id,
                "attempt": row.attempts,
                "delay_seconds": delay,
                "error": row.last_error,
            },
        )
        return EventStatus.FAILED

    def requeue_dead_letter(self, event_id: str) -> QueuedEvent:
        """Give a dead-lettered item a fresh attempt budget."""
        row = self._by_event_id(event_id)
        if row is None:
            raise KeyError(event_id)
        if row.status != EventStatus.DEAD_LETTERED.value:
            raise ValueError(f"event {event_id} is {row.status}, not dead_lettered")
        row.status = EventStatus.PENDING.value
        row.attempts = 0
        row.next_attempt_at = self._clock.now()
        self._session.flush()
        logger.info("webhook_event_requeued", extra={"event_id": event_id})
        return row.to_dto()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, event_id: str) -> QueuedEvent | None:
        row = self._by_event_id(event_id)
        return row.to_dto() if row is not None else None

    def count_due(self) -> int:
        now = self._clock.now()
        return self._session.execute(
            select(func.count()).select_from(WebhookEventModel).where(
                WebhookEventModel.status.in_(_RETRYABLE),
                WebhookEventModel.next_attempt_at <= now,
            )
        ).scalar_one()

    def list_events(
        self,
        status: str | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> EventPage:
        page = max(page, 1)
        limit = max(1, min(limit, 200))
        filters = []
        if status:
            filters.append(WebhookEventModel.status == EventStatus(status).value)
        if event_type:
            filters.append(WebhookEventModel.event_type == event_type)

        rows = self._session.execute(
            select(WebhookEventModel)
            .where(*filters)
            .order_by(WebhookEventModel.received_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        total = self._session.execute(
            select(func.count()).select_from(WebhookEventModel).where(*filters)
        ).scalar_one()

        return EventPage(
            events=tuple(r.to_dto() for r in rows),
            total=total,
            page=page,
            limit=limit,
            status_counts=self._counts(WebhookEventModel.status),
            event_type_counts=self._counts(WebhookEventModel.event_type),
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _counts(self, column) -> dict[str, int]:
        rows = self._session.execute(
            select(column, func.count()).group_by(column)
        ).all()
        return {key: count for key, count in rows}

    def _by_event_id(self, event_id: str) -> WebhookEventModel | None:
        return self._session.execute(
            select(WebhookEventModel).where(WebhookEventModel.event_id == event_id)
        ).scalar_one_or_none()

    def _get(self, row_id: UUID) -> WebhookEventModel:
        row = self._session.get(WebhookEventModel, row_id)
        if row is None:
            raise KeyError(str(row_id))
        return row
