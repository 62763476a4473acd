"""Shared types for the webhook event queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"  # will be retried at next_attempt_at
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATUSES = frozenset(
    {EventStatus.PROCESSED, EventStatus.IGNORED, EventStatus.DEAD_LETTERED}
)

# Event types produced by this system rather than the processor.
TENANT_PROVISION_EVENT = "internal.tenant.provision"


@dataclass(frozen=True)
class QueuedEvent:
    id: UUID
    event_id: str
    event_type: str
    payload: dict[str, Any]
    status: EventStatus
    attempts: int
    max_attempts: int
    received_at: datetime
    next_attempt_at: datetime
    last_error: str | None = None
    processed_at: datetime | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True)
class EnqueueResult:
    event_id: str
    enqueued: bool  # False when the event id was already queued
    status: EventStatus


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DEFERRED = "deferred"  # retried with backoff like a failure


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    reason: str | None = None
    follow_ups: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EventPage:
    """One page of the admin event listing plus per-status counts."""

    events: tuple[QueuedEvent, ...]
    total: int
    page: int
    limit: int
    status_counts: dict[str, int]
    event_type_counts: dict[str, int]

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
