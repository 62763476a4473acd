"""
Module: billing_modules.broadcast.config
Responsibility:
    Throttling for bulk email (batch size, per-item and per-batch delays)
    and the SMTP account used to deliver it.

Architecture:
    billing_modules layer -- pure dataclass configuration schema, loaded
    from YAML by billing_config.  Secrets arrive from the environment.

Failure modes:
    - ValueError from __post_init__ on non-positive batch sizes or
      negative delays.
"""

from dataclasses import dataclass, field
from typing import Self

from billing_kernel.logging_config import get_logger

logger = get_logger("modules.broadcast.config")


@dataclass
class SmtpSettings:
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    sender_email: str = "noreply@example.com"
    sender_name: str = ""
    timeout_seconds: float = 30.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class BroadcastConfig:
    """
    Bulk email throttling.

    ``item_delay_seconds`` is slept between two sends inside a batch,
    ``batch_delay_seconds`` between batches.  Progress is committed after
    every batch, so ``batch_size`` also bounds how much is re-sent after a
    crash.
    """

    batch_size: int = 50
    item_delay_seconds: float = 0.1
    batch_delay_seconds: float = 2.0
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.item_delay_seconds < 0 or self.batch_delay_seconds < 0:
            raise ValueError("broadcast delays cannot be negative")
        if isinstance(self.smtp, dict):
            self.smtp = SmtpSettings(**self.smtp)

        logger.info(
            "broadcast_config_initialized",
            extra={
                "batch_size": self.batch_size,
                "item_delay_seconds": self.item_delay_seconds,
                "batch_delay_seconds": self.batch_delay_seconds,
                "smtp_host": self.smtp.host,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()
