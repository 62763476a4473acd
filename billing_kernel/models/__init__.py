"""Kernel ORM models."""

from billing_kernel.models.idempotency import IdempotencyRecordModel, IdempotencyStatus

__all__ = ["IdempotencyRecordModel", "IdempotencyStatus"]
