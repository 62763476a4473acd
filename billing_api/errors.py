"""Maps BillingKernelError subclasses to HTTP responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_kernel.exceptions import (
    BillingKernelError,
    BroadcastNotFoundError,
    ConfigurationError,
    DegradedRevenueError,
    IdempotencyInProgressError,
    IdempotencyKeyRequiredError,
    InvalidDateRangeError,
    InvalidBroadcastContentError,
    InvalidTargetGroupError,
    ProcessorError,
    SettlementError,
    SettlementNotFoundError,
    SubscriptionNotFoundError,
    TenantNotEmptyError,
    TenantNotFoundError,
    WebhookConfigurationError,
    WebhookError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("api.errors")

# First match wins; subclasses before their bases.
STATUS_BY_ERROR: tuple[tuple[type[BillingKernelError], int], ...] = (
    (WebhookConfigurationError, 500),
    (WebhookError, 400),
    (IdempotencyKeyRequiredError, 400),
    (IdempotencyInProgressError, 409),
    (SettlementNotFoundError, 404),
    (TenantNotFoundError, 404),
    (BroadcastNotFoundError, 404),
    (SubscriptionNotFoundError, 404),
    (SettlementError, 409),
    (TenantNotEmptyError, 409),
    (DegradedRevenueError, 409),
    (InvalidTargetGroupError, 400),
    (InvalidBroadcastContentError, 400),
    (InvalidDateRangeError, 400),
    (ProcessorError, 502),
    (ConfigurationError, 500),
)


def status_for(exc: BillingKernelError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


async def billing_error_handler(request: Request, exc: BillingKernelError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.info
    log(
        "api_error_response",
        extra={"path": request.url.path, "status_code": status, "code": exc.code},
    )
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": str(exc)},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingKernelError, billing_error_handler)
