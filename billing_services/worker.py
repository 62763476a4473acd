"""
QueueWorker -- in-process consumer of the webhook event queue.

Contract:
    ``tick()`` claims and processes due items until the queue is drained
    or ``drain_batch_size`` items were handled.  ``start()`` / ``stop()``
    run ticks on a background thread.

Invariants enforced:
    - Each item runs in its own transaction; a failure rolls back only
      that item's writes, then records the error in a fresh transaction.
    - Events for one processor subscription are applied one at a time
      (keyed lock), and the row lock inside SubscriptionService extends
      that across processes.
    - The claim is committed before the handler runs, so a crash leaves a
      leased item that another worker reclaims after the lease expires.
    - Graceful shutdown: the stop signal is checked between items.
    - A deferred item (its subscription record does not exist yet) is
      rescheduled with the same backoff and dead-letter limit as a failure.
"""

from __future__ import annotations

import threading
from typing import Callable

from sqlalchemy.orm import Session

from billing_config.schema import QueueConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.utils.locks import KeyedLocks
from billing_services._event_types import DispatchStatus, EventStatus, QueuedEvent
from billing_services.dispatcher import EventDispatcher, subscription_key
from billing_services.event_queue import EventQueue
from billing_services.observability import log_queue_item_failed, log_queue_tick

logger = get_logger("services.worker")


class QueueWorker:
    """Polls the event queue and dispatches due items."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher_factory: Callable[[Session], EventDispatcher],
        config: QueueConfig | None = None,
        clock: Clock | None = None,
        locks: KeyedLocks | None = None,
    ):
        self._session_factory = session_factory
        self._dispatcher_factory = dispatcher_factory
        self._config = config or QueueConfig()
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLocks()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Process due items (public for testing).  Returns how many ran."""
        handled = 0
        failed = 0
        while handled < self._config.drain_batch_size:
            if self._stop_event.is_set():
                break
            event = self._claim()
            if event is None:
                break
            if not self._process(event):
                failed += 1
            handled += 1
        if handled:
            log_queue_tick(handled=handled, failed=failed)
        return handled

    def start(self) -> None:
        """Start polling on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="webhook-queue-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "queue_worker_started",
            extra={"poll_interval": self._config.poll_interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("queue_worker_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("queue_worker_tick_exception")
            self._stop_event.wait(timeout=self._config.poll_interval_seconds)

    def _claim(self) -> QueuedEvent | None:
        session = self._session_factory()
        try:
            event = EventQueue(session, self._config, self._clock).claim_next()
            session.commit()
            return event
        except Exception:
            session.rollback()
            logger.exception("queue_claim_failed")
            return None
        finally:
            session.close()

    def _process(self, event: QueuedEvent) -> bool:
        key = subscription_key(event.payload) or event.event_id
        with LogContext.bind(event_id=event.event_id), self._locks.hold(f"subscription:{key}"):
            session = self._session_factory()
            try:
                result = self._dispatcher_factory(session).dispatch(event)
                queue = EventQueue(session, self._config, self._clock)
                if result.status == DispatchStatus.DEFERRED:
                    self._defer(queue, event, result.reason)
                elif result.status == DispatchStatus.IGNORED:
                    queue.mark_ignored(event.id, result.reason or "ignored")
                else:
                    queue.mark_processed(event.id, result.reason)
                session.commit()
                return True
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "webhook_event_handler_failed",
                    extra={"event_type": event.event_type, "attempt": event.attempts},
                )
                error = f"{type(exc).__name__}: {exc}"
            finally:
                session.close()

            status = self._record_failure(event, error)
            log_queue_item_failed(
                event_type=event.event_type,
                attempt=event.attempts,
                dead_lettered=status == EventStatus.DEAD_LETTERED,
            )
            return False

    def _defer(self, queue: EventQueue, event: QueuedEvent, reason: str | None) -> None:
        status = queue.mark_failed(event.id, f"deferred: {reason}")
        logger.info(
            "webhook_event_deferred",
            extra={"event_type": event.event_type, "attempt": event.attempts, "reason": reason},
        )
        if status == EventStatus.DEAD_LETTERED:
            log_queue_item_failed(
                event_type=event.event_type, attempt=event.attempts, dead_lettered=True,
            )

    def _record_failure(self, event: QueuedEvent, error: str) -> EventStatus | None:
        session = self._session_factory()
        try:
            status = EventQueue(session, self._config, self._clock).mark_failed(event.id, error)
            session.commit()
            return status
        except Exception:
            # The lease will expire and the item will be reclaimed.
            session.rollback()
            logger.exception("webhook_event_failure_not_recorded")
            return None
        finally:
            session.close()
