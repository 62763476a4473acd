"""
Idempotency key generation utilities.

Caller keys are scoped by operation and period before they reach the
IdempotencyGuard, so "finalize March" and "pay March" submitted with the
same browser token never collide.
"""


def generate_idempotency_key(
    operation: str,
    scope: str,
    caller_key: str,
) -> str:
    """
    Build a scoped idempotency key.

    Format: operation:scope:caller_key

    Example:
        >>> generate_idempotency_key("settlement.finalize", "2024-03", "abc")
        "settlement.finalize:2024-03:abc"
    """
    return f"{operation}:{scope}:{caller_key}"


def period_scope(year: int, month: int) -> str:
    """Scope string for a settlement month, e.g. ``2024-03``."""
    return f"{year:04d}-{month:02d}"
