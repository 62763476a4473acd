"""
Observability hooks for the billing pipeline.

Emits structured log events for metrics and dashboards:
- Queue throughput: queue_tick (items handled / failed per tick).
- Queue health: queue_item_failed (with dead_lettered flag for alerting).
- Admin writes: admin_operation (operation, replayed, duration_ms).
- Guard failures: guard_failure (error code for aggregation).

All events carry a consistent ``observability_event`` field so log
aggregators can build counters without parsing messages.
"""

from __future__ import annotations

from typing import Any

from billing_kernel.logging_config import get_logger

logger = get_logger("services.observability")

EVENT_QUEUE_TICK = "queue_tick"
EVENT_QUEUE_ITEM_FAILED = "queue_item_failed"
EVENT_ADMIN_OPERATION = "admin_operation"
EVENT_GUARD_FAILURE = "guard_failure"


def log_queue_tick(*, handled: int, failed: int, **extra: Any) -> None:
    logger.info(
        "queue_tick",
        extra={
            "observability_event": EVENT_QUEUE_TICK,
            "handled": handled,
            "failed": failed,
            **extra,
        },
    )


def log_queue_item_failed(
    *,
    event_type: str,
    attempt: int,
    dead_lettered: bool,
    **extra: Any,
) -> None:
    """Use for retry-rate and dead-letter alerts."""
    payload: dict[str, Any] = {
        "observability_event": EVENT_QUEUE_ITEM_FAILED,
        "event_type": event_type,
        "attempt": attempt,
        "dead_lettered": dead_lettered,
        **extra,
    }
    if dead_lettered:
        logger.error("queue_item_dead_lettered", extra=payload)
    else:
        logger.warning("queue_item_failed", extra=payload)


def log_admin_operation(
    *,
    operation: str,
    replayed: bool,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    payload: dict[str, Any] = {
        "observability_event": EVENT_ADMIN_OPERATION,
        "operation": operation,
        "replayed": replayed,
        **extra,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    logger.info("admin_operation_completed", extra=payload)


def log_guard_failure(*, guard_type: str, **extra: Any) -> None:
    """Log a rejected state transition (already finalized, not empty, ...)."""
    logger.warning(
        "guard_failure",
        extra={
            "observability_event": EVENT_GUARD_FAILURE,
            "guard_type": guard_type,
            **extra,
        },
    )
