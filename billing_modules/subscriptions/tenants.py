"""
Corporate tenant provisioning and explicit deletion.

Provisioning runs as its own retryable side effect after a corporate
subscription is created or refreshed; a failure here never rolls back the
subscription update.  Deletion is an administrative action and refuses to
run while the tenant still has members besides its admin.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.exceptions import (
    SubscriptionNotFoundError,
    TenantNotEmptyError,
    TenantNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_modules.subscriptions.config import SubscriptionConfig
from billing_modules.subscriptions.models import (
    CorporateTenantInfo,
    SubscriptionStatus,
    TenantRole,
)
from billing_modules.subscriptions.orm import (
    CorporateTenantModel,
    CustomerModel,
    SubscriptionRecordModel,
)

logger = get_logger("services.tenants")


class TenantService:
    """Creates, refreshes and (explicitly) deletes corporate tenants."""

    def __init__(self, session: Session, config: SubscriptionConfig):
        self._session = session
        self._config = config

    def provision_for_subscription(self, processor_subscription_id: str) -> CorporateTenantInfo | None:
        """
        Create the admin's tenant, or point the existing one at this
        subscription with the plan's seat limit.  Idempotent.

        Returns None when the subscription is no longer live or not on a
        corporate plan (nothing to provision).

        Raises:
            SubscriptionNotFoundError: If the record does not exist.
        """
        record = self._session.execute(
            select(SubscriptionRecordModel).where(
                SubscriptionRecordModel.processor_subscription_id == processor_subscription_id
            )
        ).scalar_one_or_none()
        if record is None:
            raise SubscriptionNotFoundError(processor_subscription_id)

        if record.status == SubscriptionStatus.CANCELED.value or not self._config.is_corporate(record.plan_id):
            logger.info(
                "tenant_provisioning_skipped",
                extra={
                    "processor_subscription_id": processor_subscription_id,
                    "status": record.status,
                    "plan_id": record.plan_id,
                },
            )
            return None

        admin = self._session.get(CustomerModel, record.customer_id)
        seat_limit = self._config.seat_limit_for(record.plan_id)

        tenant = self._session.execute(
            select(CorporateTenantModel)
            .where(CorporateTenantModel.admin_customer_id == admin.id)
            .with_for_update()
        ).scalar_one_or_none()

        if tenant is None:
            tenant = CorporateTenantModel(
                name=admin.company_name or admin.display_name or admin.email,
                admin_customer_id=admin.id,
                subscription_record_id=record.id,
                seat_limit=seat_limit,
                created_by_id=SYSTEM_ACTOR_ID,
            )
            self._session.add(tenant)
            self._session.flush()
            logger.info(
                "tenant_created",
                extra={"tenant_id": str(tenant.id), "seat_limit": seat_limit},
            )
        else:
            tenant.subscription_record_id = record.id
            tenant.seat_limit = seat_limit
            tenant.updated_by_id = SYSTEM_ACTOR_ID
            logger.info(
                "tenant_refreshed",
                extra={"tenant_id": str(tenant.id), "seat_limit": seat_limit},
            )

        record.corporate_tenant_id = tenant.id
        admin.tenant_role = TenantRole.ADMIN.value
        admin.tenant_id = tenant.id
        self._session.flush()
        return tenant.to_dto()

    def get_tenant(self, tenant_id: UUID) -> CorporateTenantInfo:
        tenant = self._session.get(CorporateTenantModel, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(str(tenant_id))
        return tenant.to_dto()

    def member_count(self, tenant_id: UUID, exclude_admin: bool = True) -> int:
        tenant = self._session.get(CorporateTenantModel, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(str(tenant_id))
        stmt = select(func.count()).select_from(CustomerModel).where(
            CustomerModel.tenant_id == tenant_id
        )
        if exclude_admin:
            stmt = stmt.where(CustomerModel.id != tenant.admin_customer_id)
        return self._session.execute(stmt).scalar_one()

    def delete_tenant_if_empty(self, tenant_id: UUID, actor_id: UUID) -> None:
        """
        Delete a tenant that has no members left besides its admin.

        Raises:
            TenantNotFoundError: If the tenant does not exist.
            TenantNotEmptyError: If members remain.
        """
        tenant = self._session.execute(
            select(CorporateTenantModel)
            .where(CorporateTenantModel.id == tenant_id)
            .with_for_update()
        ).scalar_one_or_none()
        if tenant is None:
            raise TenantNotFoundError(str(tenant_id))

        members = self.member_count(tenant_id)
        if members > 0:
            raise TenantNotEmptyError(str(tenant_id), members)

        admin = self._session.get(CustomerModel, tenant.admin_customer_id)
        if admin is not None and admin.tenant_id == tenant.id:
            admin.tenant_id = None
            admin.tenant_role = None
            admin.updated_by_id = actor_id

        linked = self._session.execute(
            select(SubscriptionRecordModel).where(
                SubscriptionRecordModel.corporate_tenant_id == tenant.id
            )
        ).scalars().all()
        for record in linked:
            record.corporate_tenant_id = None

        self._session.delete(tenant)
        self._session.flush()
        logger.info(
            "tenant_deleted",
            extra={"tenant_id": str(tenant_id), "actor_id": str(actor_id)},
        )
