"""
Module: billing_modules.subscriptions.orm
Responsibility: ORM persistence for customers, subscription records and
    corporate tenants.

Architecture position: Modules > Subscriptions.  Imports from
    billing_kernel.db only.

Invariants enforced:
    - UNIQUE(processor_subscription_id): one local record per processor
      subscription.
    - Partial unique index on customer_id WHERE status <> 'canceled':
      exactly one live subscription per customer.
    - UNIQUE(admin_customer_id) on tenants: at most one tenant per admin.
    - version_id_col: concurrent writers to the same record fail with
      StaleDataError instead of silently overwriting each other.
    - Records are never deleted; cancellation is a status.

Failure modes:
    - IntegrityError on a second live subscription for a customer.
    - StaleDataError on a lost optimistic-concurrency race.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_modules.subscriptions.models import (
    BillingInterval,
    CorporateTenantInfo,
    SubscriptionSnapshot,
    SubscriptionStatus,
)


class CustomerModel(TrackedBase):
    """Local customer linked to a processor customer."""

    __tablename__ = "customers"

    __table_args__ = (
        CheckConstraint(
            "tenant_role IS NULL OR tenant_role IN ('admin')",
            name="ck_customer_tenant_role",
        ),
        Index("ix_customers_tenant_id", "tenant_id"),
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    processor_customer_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, unique=True
    )
    tenant_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # Membership only; tenant ownership lives on CorporateTenantModel.
    tenant_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SubscriptionRecordModel(TrackedBase):
    """Local view of one processor subscription."""

    __tablename__ = "subscription_records"

    __table_args__ = (
        UniqueConstraint(
            "processor_subscription_id", name="uq_subscription_processor_id"
        ),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled', 'incomplete')",
            name="ck_subscription_status",
        ),
        CheckConstraint(
            "billing_interval IN ('month', 'year', 'permanent')",
            name="ck_subscription_interval",
        ),
        Index(
            "uq_subscription_live_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("status <> 'canceled'"),
            sqlite_where=text("status <> 'canceled'"),
        ),
        Index("ix_subscription_status", "status"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"), nullable=False
    )
    processor_subscription_id: Mapped[str] = mapped_column(String(100), nullable=False)
    processor_customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_interval: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingInterval.MONTH.value
    )
    price_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    corporate_tenant_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("corporate_tenants.id", ondelete="SET NULL"), nullable=True
    )
    last_event_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            id=self.id,
            customer_id=self.customer_id,
            processor_subscription_id=self.processor_subscription_id,
            status=SubscriptionStatus(self.status),
            plan_id=self.plan_id,
            billing_interval=BillingInterval(self.billing_interval),
            price_id=self.price_id,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            trial_start=self.trial_start,
            trial_end=self.trial_end,
            cancel_at_period_end=self.cancel_at_period_end,
            canceled_at=self.canceled_at,
            corporate_tenant_id=self.corporate_tenant_id,
            last_event_id=self.last_event_id,
            last_event_at=self.last_event_at,
            version=self.version,
        )

    def __repr__(self) -> str:
        return f"<SubscriptionRecord {self.processor_subscription_id} {self.status}>"


class CorporateTenantModel(TrackedBase):
    """Corporate account provisioned for the admin of a corporate plan."""

    __tablename__ = "corporate_tenants"

    __table_args__ = (
        UniqueConstraint("admin_customer_id", name="uq_tenant_admin"),
        CheckConstraint("seat_limit > 0", name="ck_tenant_seat_limit"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    admin_customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"), nullable=False
    )
    subscription_record_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )
    seat_limit: Mapped[int] = mapped_column(Integer, nullable=False)

    def to_dto(self) -> CorporateTenantInfo:
        return CorporateTenantInfo(
            id=self.id,
            name=self.name,
            admin_customer_id=self.admin_customer_id,
            subscription_record_id=self.subscription_record_id,
            seat_limit=self.seat_limit,
        )
