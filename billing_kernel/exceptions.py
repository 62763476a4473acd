"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the HTTP surface, the queue worker, the admin operations layer)
branch on error *type*, never on message text.  Every exception carries a
class-level ``code`` that is safe to return from an API and structured
attributes that survive logging (the StructuredFormatter copies them into
``exc_*`` fields).

Example:
    try:
        settlements.finalize_settlement(2024, 3, actor_id)
    except SettlementAlreadyFinalizedError as e:
        return {"error": e.code, "status": e.status}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ConfigurationError
    |
    +-- WebhookError
    |   +-- WebhookSignatureError
    |   +-- MalformedWebhookError
    |   +-- WebhookConfigurationError
    |
    +-- SubscriptionError
    |   +-- SubscriptionNotFoundError
    |
    +-- TenantError
    |   +-- TenantNotFoundError
    |   +-- TenantNotEmptyError
    |
    +-- RevenueError
    |   +-- InvalidDateRangeError
    |   +-- DegradedRevenueError
    |   +-- ProcessorError
    |       +-- TransientProcessorError
    |       +-- ProcessorUnavailableError
    |
    +-- AllocationError
    |   +-- ContractorConfigurationError
    |   +-- InvalidAdjustmentError
    |
    +-- SettlementError
    |   +-- SettlementNotFoundError
    |   +-- SettlementAlreadyFinalizedError
    |   +-- SettlementNotFinalizedError
    |   +-- InvalidSettlementTransitionError
    |
    +-- IdempotencyError
    |   +-- IdempotencyKeyRequiredError
    |   +-- IdempotencyInProgressError
    |   +-- IdempotencyResultNotSerializableError
    |
    +-- BroadcastError
        +-- InvalidTargetGroupError
        +-- BroadcastNotFoundError
        +-- InvalidBroadcastContentError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                               | When Raised
--------------|------------------------------------|------------------------------------
Webhook       | WEBHOOK_SIGNATURE_INVALID          | Signature missing or does not verify
              | WEBHOOK_MALFORMED                  | Verified body lacks id/type/object
              | WEBHOOK_NOT_CONFIGURED             | No signing secret configured
--------------|------------------------------------|------------------------------------
Subscription  | SUBSCRIPTION_NOT_FOUND             | No local record for processor id
--------------|------------------------------------|------------------------------------
Tenant        | TENANT_NOT_FOUND                   | Tenant id does not exist
              | TENANT_NOT_EMPTY                   | Delete requested with members left
--------------|------------------------------------|------------------------------------
Revenue       | INVALID_DATE_RANGE                 | start >= end or range > 365 days
              | DEGRADED_REVENUE                   | Partial fetch used for a settlement
              | PROCESSOR_TRANSIENT                | Rate limit / network failure
              | PROCESSOR_UNAVAILABLE              | Non-retryable processor failure
--------------|------------------------------------|------------------------------------
Allocation    | CONTRACTOR_CONFIGURATION_INVALID   | Default percents != pool percent
              | INVALID_ADJUSTMENT                 | Adjusted percent out of range
--------------|------------------------------------|------------------------------------
Settlement    | SETTLEMENT_NOT_FOUND               | No settlement for the month
              | SETTLEMENT_ALREADY_FINALIZED       | Finalize on finalized/paid
              | SETTLEMENT_NOT_FINALIZED           | Payment on a non-finalized month
              | INVALID_SETTLEMENT_TRANSITION      | Status would regress
--------------|------------------------------------|------------------------------------
Idempotency   | IDEMPOTENCY_KEY_REQUIRED           | Human action without a key
              | IDEMPOTENCY_IN_PROGRESS            | Same key still executing
              | IDEMPOTENCY_RESULT_NOT_SERIALIZABLE| Result cannot be stored as JSON
--------------|------------------------------------|------------------------------------
Broadcast     | INVALID_TARGET_GROUP               | Unknown recipient group
              | BROADCAST_NOT_FOUND                | Broadcast id does not exist
              | BROADCAST_CONTENT_INVALID          | Blank subject or body

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Webhook side effects never raise toward the acknowledgment path.  The
   queue worker catches BillingKernelError (and anything else), logs it
   with ``logger.exception`` and reschedules the item.

2. TransientProcessorError is retried with backoff by its caller; every
   other ProcessorError is surfaced as a degraded result.

3. State conflicts (SettlementError, TenantNotEmptyError) are rejected
   synchronously with no partial mutation; the HTTP layer maps them to 409.
"""


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses define a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


class ConfigurationError(BillingKernelError):
    """Configuration file or value is invalid."""

    code: str = "CONFIGURATION_INVALID"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


# Webhook exceptions


class WebhookError(BillingKernelError):
    """Base exception for inbound webhook errors."""

    code: str = "WEBHOOK_ERROR"


class WebhookSignatureError(WebhookError):
    """Signature header missing or verification failed.  Never applied."""

    code: str = "WEBHOOK_SIGNATURE_INVALID"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook signature rejected: {reason}")


class MalformedWebhookError(WebhookError):
    """Verified payload does not carry a usable event envelope."""

    code: str = "WEBHOOK_MALFORMED"

    def __init__(self, reason: str, event_id: str | None = None):
        self.reason = reason
        self.event_id = event_id
        super().__init__(f"Malformed webhook event {event_id or '<unknown>'}: {reason}")


class WebhookConfigurationError(WebhookError):
    """No signing secret is configured, so nothing can be verified."""

    code: str = "WEBHOOK_NOT_CONFIGURED"

    def __init__(self) -> None:
        super().__init__("Webhook signing secret is not configured")


# Subscription exceptions


class SubscriptionError(BillingKernelError):
    """Base exception for subscription lifecycle errors."""

    code: str = "SUBSCRIPTION_ERROR"


class SubscriptionNotFoundError(SubscriptionError):
    """No local record for the processor subscription."""

    code: str = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, processor_subscription_id: str):
        self.processor_subscription_id = processor_subscription_id
        super().__init__(f"Subscription not found: {processor_subscription_id}")


# Tenant exceptions


class TenantError(BillingKernelError):
    """Base exception for corporate tenant errors."""

    code: str = "TENANT_ERROR"


class TenantNotFoundError(TenantError):
    code: str = "TENANT_NOT_FOUND"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class TenantNotEmptyError(TenantError):
    """Explicit tenant deletion requested while members remain."""

    code: str = "TENANT_NOT_EMPTY"

    def __init__(self, tenant_id: str, member_count: int):
        self.tenant_id = tenant_id
        self.member_count = member_count
        super().__init__(
            f"Tenant {tenant_id} still has {member_count} member(s)"
        )


# Revenue / processor exceptions


class RevenueError(BillingKernelError):
    """Base exception for revenue reconciliation errors."""

    code: str = "REVENUE_ERROR"


class InvalidDateRangeError(RevenueError):
    code: str = "INVALID_DATE_RANGE"

    def __init__(self, start: str, end: str, reason: str):
        self.start = start
        self.end = end
        self.reason = reason
        super().__init__(f"Invalid date range {start} .. {end}: {reason}")


class DegradedRevenueError(RevenueError):
    """A partial transaction fetch cannot back a settlement snapshot."""

    code: str = "DEGRADED_REVENUE"

    def __init__(self, year: int, month: int, error_count: int):
        self.year = year
        self.month = month
        self.error_count = error_count
        super().__init__(
            f"Revenue for {year}-{month:02d} is incomplete "
            f"({error_count} fetch error(s)); refusing to settle"
        )


class ProcessorError(RevenueError):
    """Failure talking to the payment processor."""

    code: str = "PROCESSOR_ERROR"

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class TransientProcessorError(ProcessorError):
    """Rate limit or network failure; safe to retry."""

    code: str = "PROCESSOR_TRANSIENT"


class ProcessorUnavailableError(ProcessorError):
    """Non-retryable processor failure (auth, invalid request, outage)."""

    code: str = "PROCESSOR_UNAVAILABLE"


# Allocation exceptions


class AllocationError(BillingKernelError):
    """Base exception for profit allocation errors."""

    code: str = "ALLOCATION_ERROR"


class ContractorConfigurationError(AllocationError):
    """Contractor defaults do not split the pool exactly."""

    code: str = "CONTRACTOR_CONFIGURATION_INVALID"

    def __init__(self, message: str):
        super().__init__(message)


class InvalidAdjustmentError(AllocationError):
    code: str = "INVALID_ADJUSTMENT"

    def __init__(self, contractor_key: str, adjusted_percent: str, reason: str):
        self.contractor_key = contractor_key
        self.adjusted_percent = adjusted_percent
        self.reason = reason
        super().__init__(
            f"Invalid adjustment for {contractor_key} ({adjusted_percent}%): {reason}"
        )


# Settlement exceptions


class SettlementError(BillingKernelError):
    """Base exception for settlement lifecycle errors."""

    code: str = "SETTLEMENT_ERROR"


class SettlementNotFoundError(SettlementError):
    code: str = "SETTLEMENT_NOT_FOUND"

    def __init__(self, year: int, month: int):
        self.year = year
        self.month = month
        super().__init__(f"No settlement for {year}-{month:02d}")


class SettlementAlreadyFinalizedError(SettlementError):
    """Finalize (or draft save) requested on a finalized or paid month."""

    code: str = "SETTLEMENT_ALREADY_FINALIZED"

    def __init__(self, year: int, month: int, status: str):
        self.year = year
        self.month = month
        self.status = status
        super().__init__(
            f"Settlement {year}-{month:02d} is already {status}"
        )


class SettlementNotFinalizedError(SettlementError):
    """Payment requested on a settlement that is not exactly finalized."""

    code: str = "SETTLEMENT_NOT_FINALIZED"

    def __init__(self, year: int, month: int, status: str):
        self.year = year
        self.month = month
        self.status = status
        super().__init__(
            f"Settlement {year}-{month:02d} is {status}; payment requires finalized"
        )


class InvalidSettlementTransitionError(SettlementError):
    """Settlement status would regress or skip a step."""

    code: str = "INVALID_SETTLEMENT_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Settlement status cannot change from {from_status} to {to_status}"
        )


# Idempotency exceptions


class IdempotencyError(BillingKernelError):
    """Base exception for idempotency guard errors."""

    code: str = "IDEMPOTENCY_ERROR"


class IdempotencyKeyRequiredError(IdempotencyError):
    code: str = "IDEMPOTENCY_KEY_REQUIRED"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation {operation} requires an idempotency key")


class IdempotencyInProgressError(IdempotencyError):
    """Another execution holds the key and has not finished yet."""

    code: str = "IDEMPOTENCY_IN_PROGRESS"

    def __init__(self, operation: str, key: str):
        self.operation = operation
        self.key = key
        super().__init__(f"Operation {operation} with key {key} is still in progress")


class IdempotencyResultNotSerializableError(IdempotencyError):
    """The guarded operation returned a value that cannot be stored as JSON."""

    code: str = "IDEMPOTENCY_RESULT_NOT_SERIALIZABLE"

    def __init__(self, operation: str, result_type: str):
        self.operation = operation
        self.result_type = result_type
        super().__init__(
            f"Operation {operation} returned {result_type}, which is not JSON-serializable"
        )


# Broadcast exceptions


class BroadcastError(BillingKernelError):
    """Base exception for bulk email broadcast errors."""

    code: str = "BROADCAST_ERROR"


class InvalidTargetGroupError(BroadcastError):
    code: str = "INVALID_TARGET_GROUP"

    def __init__(self, target_group: str):
        self.target_group = target_group
        super().__init__(f"Invalid target group: {target_group}")


class BroadcastNotFoundError(BroadcastError):
    code: str = "BROADCAST_NOT_FOUND"

    def __init__(self, broadcast_id: str):
        self.broadcast_id = broadcast_id
        super().__init__(f"Broadcast not found: {broadcast_id}")


class InvalidBroadcastContentError(BroadcastError):
    code: str = "BROADCAST_CONTENT_INVALID"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Broadcast {field} must not be blank")
