"""Broadcast Domain Models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class TargetGroup(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"
    INDIVIDUAL = "individual"
    INDIVIDUAL_MONTHLY = "individual_monthly"
    INDIVIDUAL_YEARLY = "individual_yearly"
    CORPORATE = "corporate"
    CORPORATE_MONTHLY = "corporate_monthly"
    CORPORATE_YEARLY = "corporate_yearly"


class BroadcastStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Recipient:
    customer_id: UUID
    email: str
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": str(self.customer_id),
            "email": self.email,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        return cls(
            customer_id=UUID(data["customer_id"]),
            email=data["email"],
            name=data.get("name"),
        )


@dataclass(frozen=True)
class BroadcastSummary:
    id: UUID
    subject: str
    target_group: TargetGroup
    status: BroadcastStatus
    total_count: int
    sent_count: int
    fail_count: int
    next_index: int
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return self.total_count - self.next_index

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "target_group": self.target_group.value,
            "status": self.status.value,
            "total_count": self.total_count,
            "sent_count": self.sent_count,
            "fail_count": self.fail_count,
            "next_index": self.next_index,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
