"""Admin API: revenue, settlements, broadcasts, tenants, queue maintenance."""

from typing import Annotated
from uuid import UUID

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Response,
    status,
)
from pydantic import BaseModel, Field

from billing_api.dependencies import get_admin
from billing_kernel.services.idempotency_guard import IdempotentResult
from billing_services.admin import AdminOperations

router = APIRouter(prefix="/admin", tags=["admin"])

Year = Annotated[int, Path(ge=2000, le=2100)]
Month = Annotated[int, Path(ge=1, le=12)]


class BroadcastRequest(BaseModel):
    subject: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
    target_group: str


def _guarded_response(result: IdempotentResult, response: Response, name: str) -> dict:
    response.headers["Idempotent-Replayed"] = "true" if result.replayed else "false"
    return {"replayed": result.replayed, name: result.value}


# -----------------------------------------------------------------------------
# Revenue
# -----------------------------------------------------------------------------


@router.get("/revenue/{year}/{month}")
def revenue_report(
    year: Year,
    month: Month,
    admin: AdminOperations = Depends(get_admin),
):
    return admin.revenue_report(year, month)


# -----------------------------------------------------------------------------
# Settlements
# -----------------------------------------------------------------------------


@router.get("/settlements/{year}/{month}/preview")
def preview_allocation(
    year: Year,
    month: Month,
    admin: AdminOperations = Depends(get_admin),
):
    return admin.compute_allocation(year, month)


@router.get("/settlements/{year}/{month}")
def get_settlement(
    year: Year,
    month: Month,
    admin: AdminOperations = Depends(get_admin),
):
    settlement = admin.get_settlement(year, month)
    if settlement is None:
        raise HTTPException(status_code=404, detail=f"No settlement for {year}-{month:02d}")
    return settlement


@router.post("/settlements/{year}/{month}/draft")
def save_draft(
    response: Response,
    year: Year,
    month: Month,
    x_actor_id: UUID = Header(),
    x_idempotency_key: str | None = Header(default=None),
    admin: AdminOperations = Depends(get_admin),
):
    result = admin.save_draft(year, month, x_actor_id, x_idempotency_key)
    return _guarded_response(result, response, "settlement")


@router.post("/settlements/{year}/{month}/finalize")
def finalize_settlement(
    response: Response,
    year: Year,
    month: Month,
    x_actor_id: UUID = Header(),
    x_idempotency_key: str | None = Header(default=None),
    admin: AdminOperations = Depends(get_admin),
):
    result = admin.finalize_settlement(year, month, x_actor_id, x_idempotency_key)
    return _guarded_response(result, response, "settlement")


@router.post("/settlements/{year}/{month}/pay")
def record_payment(
    response: Response,
    year: Year,
    month: Month,
    x_actor_id: UUID = Header(),
    x_idempotency_key: str | None = Header(default=None),
    admin: AdminOperations = Depends(get_admin),
):
    result = admin.record_payment(year, month, x_actor_id, x_idempotency_key)
    return _guarded_response(result, response, "settlement")


# -----------------------------------------------------------------------------
# Broadcasts
# -----------------------------------------------------------------------------


@router.post("/broadcasts", status_code=status.HTTP_202_ACCEPTED)
def create_broadcast(
    request: BroadcastRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    x_actor_id: UUID = Header(),
    x_idempotency_key: str | None = Header(default=None),
    admin: AdminOperations = Depends(get_admin),
):
    result = admin.broadcast(
        request.subject,
        request.body,
        request.target_group,
        x_actor_id,
        x_idempotency_key,
        run=False,
    )
    if result.value["status"] != "completed":
        background_tasks.add_task(admin.run_broadcast, UUID(result.value["id"]))
    return _guarded_response(result, response, "broadcast")


# -----------------------------------------------------------------------------
# Tenants and maintenance
# -----------------------------------------------------------------------------


@router.delete("/tenants/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tenant(
    tenant_id: UUID,
    x_actor_id: UUID = Header(),
    admin: AdminOperations = Depends(get_admin),
):
    admin.delete_tenant(tenant_id, x_actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/webhook-events")
def list_webhook_events(
    event_status: str | None = Query(default=None, alias="status"),
    event_type: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    admin: AdminOperations = Depends(get_admin),
):
    try:
        return admin.list_webhook_events(event_status, event_type, page, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/webhook-events/{event_id}/requeue")
def requeue_webhook_event(
    event_id: str,
    admin: AdminOperations = Depends(get_admin),
):
    try:
        return admin.requeue_dead_letter(event_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown event {event_id}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/idempotency/purge")
def purge_idempotency_records(admin: AdminOperations = Depends(get_admin)):
    return {"purged": admin.purge_expired_idempotency_records()}
