"""
Process-wide wiring: engine, session factory, queue worker and admin
operations, built once from a BillingConfig.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from billing_config.schema import BillingConfig
from billing_kernel.db.engine import get_session_factory, init_engine_from_url
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import configure_logging
from billing_kernel.utils.locks import KeyedLocks
from billing_modules.broadcast.sender import EmailSender, SmtpEmailSender
from billing_modules.revenue.fetcher import (
    ProcessorClient,
    StripeProcessorClient,
    TransactionFetcher,
)
from billing_modules.revenue.service import RevenueReconciliationService
from billing_services.admin import AdminOperations
from billing_services.dispatcher import EventDispatcher
from billing_services.worker import QueueWorker


@dataclass
class BillingRuntime:
    config: BillingConfig
    session_factory: Callable[[], Session]
    worker: QueueWorker
    admin: AdminOperations
    clock: Clock = field(default_factory=SystemClock)


def build_runtime(
    config: BillingConfig,
    session_factory: Callable[[], Session] | None = None,
    clock: Clock | None = None,
    processor_client: ProcessorClient | None = None,
    sender: EmailSender | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BillingRuntime:
    """
    Wire every collaborator.  Tests pass their own session factory, clock,
    processor client and sender; production passes only the config.
    """
    clock = clock or SystemClock()
    if session_factory is None:
        configure_logging(level=config.logging.level)
        init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )
        session_factory = get_session_factory()

    client = processor_client or StripeProcessorClient(config.processor.api_key)
    revenue = RevenueReconciliationService(
        TransactionFetcher(client, config.revenue, sleep=sleep), config.revenue
    )
    locks = KeyedLocks()

    worker = QueueWorker(
        session_factory,
        lambda session: EventDispatcher(session, config.plans, config.queue, clock),
        config.queue,
        clock,
        locks,
    )
    admin = AdminOperations(
        session_factory,
        config,
        revenue,
        sender or SmtpEmailSender(config.broadcast.smtp),
        clock,
        locks,
        sleep=sleep,
    )
    return BillingRuntime(
        config=config,
        session_factory=session_factory,
        worker=worker,
        admin=admin,
        clock=clock,
    )
