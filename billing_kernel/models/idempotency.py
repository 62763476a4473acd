"""
Module: billing_kernel.models.idempotency
Responsibility: ORM persistence for idempotency records -- one row per
    (operation, key) claimed by the IdempotencyGuard.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(operation, idempotency_key): concurrent claims for the same key
      collide in the database; exactly one wins.
    - status is limited to in_progress | completed by a check constraint.
    - result_hash is the canonical-JSON SHA-256 of result.

Failure modes:
    - IntegrityError on duplicate claim (handled by the guard).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class IdempotencyRecordModel(TrackedBase):
    """Claimed idempotency key and, once completed, the recorded result."""

    __tablename__ = "idempotency_records"

    __table_args__ = (
        UniqueConstraint(
            "operation", "idempotency_key", name="uq_idempotency_operation_key"
        ),
        CheckConstraint(
            "status IN ('in_progress', 'completed')",
            name="ck_idempotency_status",
        ),
        Index("ix_idempotency_expires_at", "expires_at"),
    )

    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IdempotencyStatus.IN_PROGRESS.value
    )
    result: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    result_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord {self.operation}:{self.idempotency_key} "
            f"{self.status}>"
        )
