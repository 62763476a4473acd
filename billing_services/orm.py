"""
ORM model for the durable webhook event queue.

Invariants enforced:
    - ``event_id`` is UNIQUE: a processor retry of the same notification
      never creates a second row.
    - ``attempts <= max_attempts``; an item that used its last attempt is
      dead-lettered, never silently dropped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_services._event_types import EventStatus, QueuedEvent


class WebhookEventModel(TrackedBase):
    """One processor notification (or internal follow-up) awaiting work."""

    __tablename__ = "webhook_events"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'ignored', "
            "'failed', 'dead_lettered')",
            name="ck_webhook_event_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_webhook_event_attempts"),
        CheckConstraint("max_attempts > 0", name="ck_webhook_event_max_attempts"),
        Index("ix_webhook_events_due", "status", "next_attempt_at"),
        Index("ix_webhook_events_event_type", "event_type"),
    )

    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(nullable=False)
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> QueuedEvent:
        return QueuedEvent(
            id=self.id,
            event_id=self.event_id,
            event_type=self.event_type,
            payload=self.payload,
            status=EventStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            received_at=self.received_at,
            next_attempt_at=self.next_attempt_at,
            last_error=self.last_error,
            processed_at=self.processed_at,
        )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} {self.event_type} {self.status}>"
