"""
Billing configuration schema.

Sections owned by a domain module (plans, revenue, allocation, broadcast)
reuse that module's config dataclass; the rest are defined here.  Every
section validates itself in ``__post_init__``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from billing_modules.allocation.config import AllocationConfig
from billing_modules.broadcast.config import BroadcastConfig
from billing_modules.revenue.config import RevenueConfig
from billing_modules.subscriptions.config import SubscriptionConfig


@dataclass(frozen=True)
class ProcessorConfig:
    """Payment processor credentials.  Secrets come from the environment."""

    api_key: str | None = None
    webhook_secret: str | None = None
    webhook_tolerance_seconds: int = 300

    def __post_init__(self):
        if self.webhook_tolerance_seconds <= 0:
            raise ValueError("webhook_tolerance_seconds must be positive")


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///billing.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10

    def __post_init__(self):
        if not self.url:
            raise ValueError("database url is required")
        if self.pool_size < 1:
            raise ValueError("pool_size must be at least 1")


@dataclass(frozen=True)
class IdempotencyConfig:
    window_minutes: int = 60

    def __post_init__(self):
        if self.window_minutes <= 0:
            raise ValueError("idempotency window_minutes must be positive")


@dataclass(frozen=True)
class QueueConfig:
    """
    Durable webhook queue.

    A failed item is retried after ``backoff_base_seconds * 2**(attempts-1)``
    seconds (capped at ``backoff_cap_seconds``) until ``max_attempts`` is
    reached, then dead-lettered.  A claimed item whose lease expires is
    picked up again.
    """

    max_attempts: int = 8
    backoff_base_seconds: float = 30.0
    backoff_cap_seconds: float = 3600.0
    lease_seconds: int = 300
    poll_interval_seconds: float = 5.0
    drain_batch_size: int = 50

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("queue max_attempts must be at least 1")
        if self.backoff_base_seconds <= 0 or self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("queue backoff must satisfy 0 < base <= cap")
        if self.lease_seconds <= 0:
            raise ValueError("queue lease_seconds must be positive")
        if self.drain_batch_size < 1:
            raise ValueError("queue drain_batch_size must be at least 1")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class BillingConfig:
    """The assembled runtime configuration."""

    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    plans: SubscriptionConfig = field(default_factory=SubscriptionConfig.with_defaults)
    revenue: RevenueConfig = field(default_factory=RevenueConfig.with_defaults)
    allocation: AllocationConfig = field(default_factory=AllocationConfig.with_defaults)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig.with_defaults)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checksum: str = ""
