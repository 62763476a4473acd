"""
Processor webhook endpoint.

Only verification and one queue insert happen before the 200; the actual
work is drained by the queue worker (scheduled here as a background task
and by the polling worker).
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool

from billing_api.dependencies import get_runtime
from billing_api.runtime import BillingRuntime
from billing_kernel.db.engine import session_scope
from billing_services.intake import IntakeResult, WebhookIntake

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None),
    runtime: BillingRuntime = Depends(get_runtime),
):
    raw_body = await request.body()

    def receive() -> IntakeResult:
        with session_scope(runtime.session_factory) as session:
            intake = WebhookIntake(
                session, runtime.config.processor, runtime.config.queue, runtime.clock
            )
            return intake.receive(raw_body, stripe_signature)

    result = await run_in_threadpool(receive)
    background_tasks.add_task(runtime.worker.tick)
    return {
        "received": True,
        "status": "queued" if result.enqueued else "duplicate",
        "event_id": result.event_id,
    }
