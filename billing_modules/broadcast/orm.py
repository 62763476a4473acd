"""
Module: billing_modules.broadcast.orm
Responsibility: Durable record of a bulk email run: the recipient list as
    resolved at creation time and the send progress.

Invariants enforced:
    - 0 <= next_index <= total_count; sent_count + fail_count == next_index.
    - The recipient snapshot never changes after creation; resuming a run
      never picks up customers who joined the group later.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_modules.broadcast.models import (
    BroadcastStatus,
    BroadcastSummary,
    Recipient,
    TargetGroup,
)


class BroadcastLogModel(TrackedBase):
    __tablename__ = "broadcast_logs"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_broadcast_status",
        ),
        CheckConstraint(
            "next_index >= 0 AND next_index <= total_count",
            name="ck_broadcast_progress",
        ),
        CheckConstraint("batch_size > 0", name="ck_broadcast_batch_size"),
        Index("ix_broadcast_logs_status", "status"),
    )

    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    target_group: Mapped[str] = mapped_column(String(50), nullable=False)
    recipients: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BroadcastStatus.PENDING.value
    )
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def recipient_at(self, index: int) -> Recipient:
        return Recipient.from_dict(self.recipients[index])

    def to_dto(self) -> BroadcastSummary:
        return BroadcastSummary(
            id=self.id,
            subject=self.subject,
            target_group=TargetGroup(self.target_group),
            status=BroadcastStatus(self.status),
            total_count=self.total_count,
            sent_count=self.sent_count,
            fail_count=self.fail_count,
            next_index=self.next_index,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return (
            f"<BroadcastLog {self.id} {self.target_group} "
            f"{self.next_index}/{self.total_count} {self.status}>"
        )
