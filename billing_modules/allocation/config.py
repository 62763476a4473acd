"""
Module: billing_modules.allocation.config
Responsibility:
    Contractor list and pool percentage for the monthly profit split.

Architecture:
    billing_modules layer -- pure dataclass configuration schema.

Invariants:
    - 0 < pool_percent <= 100.
    - Contractor keys are unique; default percents are non-negative and sum
      exactly to pool_percent.

Failure modes:
    - ContractorConfigurationError from __post_init__.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self

from billing_kernel.exceptions import ContractorConfigurationError
from billing_kernel.logging_config import get_logger
from billing_modules.allocation.models import ContractorDefinition

logger = get_logger("modules.allocation.config")


@dataclass
class AllocationConfig:
    """Contractors sharing the pool and the pool's share of net profit."""

    pool_percent: Decimal = Decimal("60")
    contractors: tuple[ContractorDefinition, ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.pool_percent = Decimal(str(self.pool_percent))
        if not (Decimal("0") < self.pool_percent <= Decimal("100")):
            raise ContractorConfigurationError("pool_percent must be in (0, 100]")
        if not self.contractors:
            raise ContractorConfigurationError("at least one contractor is required")

        keys = [c.key for c in self.contractors]
        if len(set(keys)) != len(keys):
            raise ContractorConfigurationError(f"duplicate contractor keys: {keys}")
        if any(c.default_percent < 0 for c in self.contractors):
            raise ContractorConfigurationError("default percents cannot be negative")

        total = sum((c.default_percent for c in self.contractors), Decimal("0"))
        if total != self.pool_percent:
            raise ContractorConfigurationError(
                f"contractor default percents sum to {total}, "
                f"pool percent is {self.pool_percent}"
            )

        logger.info(
            "allocation_config_initialized",
            extra={
                "pool_percent": str(self.pool_percent),
                "contractors": keys,
            },
        )

    def contractor(self, key: str) -> ContractorDefinition | None:
        for c in self.contractors:
            if c.key == key:
                return c
        return None

    @classmethod
    def with_defaults(cls) -> Self:
        """Two contractors at 30% each of a 60% pool."""
        return cls(
            pool_percent=Decimal("60"),
            contractors=(
                ContractorDefinition("yoshitsune", "Yoshitsune", Decimal("30")),
                ContractorDefinition("kensei", "Kensei", Decimal("30")),
            ),
        )
