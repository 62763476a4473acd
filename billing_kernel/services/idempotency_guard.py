"""
Module: billing_kernel.services.idempotency_guard
Responsibility: Execute an externally triggered operation at most once per
    (operation, key) within a validity window, replaying the recorded
    result for duplicate submissions.
Architecture position: Kernel > Services.  Used by the settlement
    lifecycle, the bulk broadcast and the administrative operations layer.

Invariants enforced:
    - At most one execution per (operation, key) inside the window: the
      claim row is inserted under UNIQUE(operation, idempotency_key), so a
      concurrent duplicate insert fails and re-reads the winner's row.
    - A duplicate call never re-runs side effects; it returns the first
      call's stored result.
    - After the window expires the key may be reused (the stale row is
      replaced).
    - A failed execution releases its claim so a retry can run.

Failure modes:
    - IdempotencyInProgressError when the key is held by an unfinished run.
    - IdempotencyResultNotSerializableError when the operation returns
      something that cannot be rendered as JSON; the claim is released.

Audit relevance:
    Every claim, replay and expiry is logged with operation and key, so a
    double-clicked "pay contractors" shows up as one execution and one
    replay.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    IdempotencyInProgressError,
    IdempotencyResultNotSerializableError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.idempotency import IdempotencyRecordModel, IdempotencyStatus
from billing_kernel.utils.hashing import hash_payload, to_json_compatible

logger = get_logger("services.idempotency_guard")

DEFAULT_WINDOW_MINUTES = 60


@dataclass(frozen=True)
class IdempotentResult:
    """Outcome of a guarded execution."""

    value: Any
    replayed: bool
    key: str | None = None


class IdempotencyGuard:
    """
    At-most-once executor keyed by (operation, key).

    Contract:
        ``execute()`` runs inside the caller's transaction and only flushes.
        The caller commits; callers that need in-process exclusion hold a
        KeyedLocks entry for the key across that commit.

    Guarantees:
        - Results are normalized to JSON-compatible values, so a first run
          and a replay return the same shape.
        - The wrapped function runs inside a SAVEPOINT; if it raises, its
          writes and the claim are both discarded.

    Non-goals:
        - Does NOT commit.
        - Does NOT retry the wrapped operation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
    ):
        if window_minutes <= 0:
            raise ValueError("window_minutes must be positive")
        self._session = session
        self._clock = clock or SystemClock()
        self._window = timedelta(minutes=window_minutes)

    def execute(
        self,
        operation: str,
        key: str | None,
        fn: Callable[[], Any],
    ) -> IdempotentResult:
        """
        Run ``fn`` at most once for (operation, key).

        A falsy key runs ``fn`` directly without recording anything.
        """
        if not key:
            logger.debug("idempotency_key_absent", extra={"operation": operation})
            return IdempotentResult(value=_normalize(operation, fn()), replayed=False)

        now = self._clock.now()

        existing = self._find(operation, key)
        if existing is not None:
            replay = self._resolve_existing(existing, operation, key)
            if replay is not None:
                return replay

        record = IdempotencyRecordModel(
            operation=operation,
            idempotency_key=key,
            status=IdempotencyStatus.IN_PROGRESS.value,
            expires_at=now + self._window,
        )
        savepoint = self._session.begin_nested()
        try:
            self._session.add(record)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.info(
                "idempotency_claim_conflict",
                extra={"operation": operation, "idempotency_key": key},
            )
            winner = self._find(operation, key)
            if winner is None:
                raise IdempotencyInProgressError(operation, key)
            replay = self._resolve_existing(winner, operation, key)
            if replay is None:
                raise IdempotencyInProgressError(operation, key)
            return replay
        savepoint.commit()

        logger.info(
            "idempotency_claimed",
            extra={
                "operation": operation,
                "idempotency_key": key,
                "expires_at": record.expires_at,
            },
        )

        work = self._session.begin_nested()
        try:
            value = _normalize(operation, fn())
            work.commit()
        except Exception:
            work.rollback()
            self._session.delete(record)
            self._session.flush()
            logger.warning(
                "idempotency_execution_failed",
                extra={"operation": operation, "idempotency_key": key},
                exc_info=True,
            )
            raise

        record.status = IdempotencyStatus.COMPLETED.value
        record.result = value
        record.result_hash = hash_payload(value)
        record.completed_at = self._clock.now()
        self._session.flush()

        logger.info(
            "idempotency_completed",
            extra={
                "operation": operation,
                "idempotency_key": key,
                "result_hash": record.result_hash,
            },
        )
        return IdempotentResult(value=value, replayed=False, key=key)

    def purge_expired(self) -> int:
        """Delete every record whose window has passed.  Returns the count."""
        now = self._clock.now()
        result = self._session.execute(
            delete(IdempotencyRecordModel).where(
                IdempotencyRecordModel.expires_at <= now
            )
        )
        self._session.flush()
        count = result.rowcount or 0
        logger.info("idempotency_records_purged", extra={"count": count})
        return count

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _find(self, operation: str, key: str) -> IdempotencyRecordModel | None:
        return self._session.execute(
            select(IdempotencyRecordModel).where(
                IdempotencyRecordModel.operation == operation,
                IdempotencyRecordModel.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _resolve_existing(
        self,
        existing: IdempotencyRecordModel,
        operation: str,
        key: str,
    ) -> IdempotentResult | None:
        """Replay, reject, or (when expired) clear the way for a new claim."""
        if existing.is_expired(self._clock.now()):
            self._session.delete(existing)
            self._session.flush()
            logger.info(
                "idempotency_key_expired",
                extra={"operation": operation, "idempotency_key": key},
            )
            return None

        if existing.status == IdempotencyStatus.COMPLETED.value:
            logger.info(
                "idempotency_replayed",
                extra={"operation": operation, "idempotency_key": key},
            )
            return IdempotentResult(value=existing.result, replayed=True, key=key)

        raise IdempotencyInProgressError(operation, key)


def _normalize(operation: str, value: Any) -> Any:
    try:
        return to_json_compatible(value)
    except TypeError as exc:
        raise IdempotencyResultNotSerializableError(
            operation, type(value).__name__
        ) from exc
