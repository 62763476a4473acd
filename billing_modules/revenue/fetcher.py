"""
Module: billing_modules.revenue.fetcher
Responsibility: Pull succeeded transactions for a date range from the
    payment processor, page by page, with refund status per transaction.
Architecture position: Modules > Revenue.  The only code in the module
    that performs network I/O, always through a ProcessorClient.

Invariants enforced:
    - Page size never exceeds the processor maximum (100).
    - Transient failures are retried with exponential backoff up to
      ``max_attempts``; after that the run stops and reports a degraded
      result instead of raising.
    - ``resume_cursor`` always points at the end of the last page whose
      transactions were all fetched, so a rerun from it neither skips nor
      duplicates transactions.
    - Transaction ids are unique within a result.

Failure modes:
    - InvalidDateRangeError for start >= end or a range over the limit.
    - Non-transient ProcessorError is not retried; it degrades the run.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, TypeVar

import stripe

from billing_kernel.db.types import money_from_minor_units
from billing_kernel.exceptions import (
    InvalidDateRangeError,
    ProcessorError,
    ProcessorUnavailableError,
    TransientProcessorError,
)
from billing_kernel.logging_config import get_logger
from billing_modules.revenue.config import MAX_PAGE_SIZE, RevenueConfig
from billing_modules.revenue.models import FetchResult, RawTransaction

logger = get_logger("modules.revenue.fetcher")

T = TypeVar("T")

SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class ProcessorPage:
    items: list[dict[str, Any]]
    has_more: bool


@dataclass(frozen=True)
class ChargeInfo:
    refunded: bool
    amount_refunded: int
    fee: int | None = None
    billing_email: str | None = None
    description: str | None = None


class ProcessorClient(Protocol):
    """Revenue query interface of the payment processor."""

    def list_payment_intents(
        self,
        created_gte: int,
        created_lt: int,
        limit: int,
        starting_after: str | None,
    ) -> ProcessorPage: ...

    def get_charge(self, payment_intent_id: str) -> ChargeInfo | None: ...


def _plain(obj: Any) -> dict[str, Any]:
    """Stripe objects to plain dicts across SDK versions."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return dict(obj)


class StripeProcessorClient:
    """ProcessorClient backed by the ``stripe`` SDK."""

    def __init__(self, api_key: str):
        self._api_key = api_key

    def list_payment_intents(
        self,
        created_gte: int,
        created_lt: int,
        limit: int,
        starting_after: str | None,
    ) -> ProcessorPage:
        params: dict[str, Any] = {
            "created": {"gte": created_gte, "lt": created_lt},
            "limit": min(limit, MAX_PAGE_SIZE),
        }
        if starting_after:
            params["starting_after"] = starting_after
        page = self._call("list_payment_intents", stripe.PaymentIntent.list, **params)
        return ProcessorPage(
            items=[_plain(pi) for pi in page.data],
            has_more=bool(page.has_more),
        )

    def get_charge(self, payment_intent_id: str) -> ChargeInfo | None:
        page = self._call(
            "get_charge",
            stripe.Charge.list,
            payment_intent=payment_intent_id,
            limit=1,
            expand=["data.balance_transaction"],
        )
        if not page.data:
            return None
        charge = _plain(page.data[0])
        balance = charge.get("balance_transaction")
        fee = balance.get("fee") if isinstance(balance, dict) else None
        billing = charge.get("billing_details") or {}
        return ChargeInfo(
            refunded=bool(charge.get("refunded")),
            amount_refunded=int(charge.get("amount_refunded") or 0),
            fee=fee,
            billing_email=billing.get("email"),
            description=charge.get("description"),
        )

    def _call(self, operation: str, fn: Callable[..., T], **params: Any) -> T:
        try:
            return fn(api_key=self._api_key, **params)
        except (stripe.RateLimitError, stripe.APIConnectionError) as exc:
            raise TransientProcessorError(str(exc), operation=operation) from exc
        except stripe.StripeError as exc:
            raise ProcessorUnavailableError(str(exc), operation=operation) from exc


class TransactionFetcher:
    """
    Paginated, retrying, resumable transaction fetch.

    Contract:
        ``fetch()`` never raises ProcessorError; failures end the run with
        ``complete=False`` and the errors listed.

    Non-goals:
        - Does NOT classify or persist anything.
    """

    def __init__(
        self,
        client: ProcessorClient,
        config: RevenueConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._config = config
        self._sleep = sleep

    def fetch(
        self,
        start: datetime,
        end: datetime,
        resume_cursor: str | None = None,
    ) -> FetchResult:
        """Fetch succeeded transactions created in [start, end)."""
        self._validate_range(start, end)

        gte = int(start.timestamp())
        lt = int(end.timestamp())
        cursor = resume_cursor
        seen: set[str] = set()
        transactions: list[RawTransaction] = []
        errors: list[str] = []
        pages = 0

        logger.info(
            "transaction_fetch_started",
            extra={"start": start, "end": end, "resume_cursor": resume_cursor},
        )

        while True:
            try:
                page = self._with_retry(
                    "list_payment_intents",
                    lambda: self._client.list_payment_intents(
                        gte, lt, self._config.page_size, cursor
                    ),
                )
                page_transactions = self._expand_page(page, seen)
            except ProcessorError as exc:
                errors.append(f"{exc.code}: {exc}")
                logger.error(
                    "transaction_fetch_degraded",
                    extra={"resume_cursor": cursor, "pages_fetched": pages, "error": str(exc)},
                )
                return FetchResult(
                    transactions=tuple(transactions),
                    complete=False,
                    resume_cursor=cursor,
                    pages_fetched=pages,
                    errors=tuple(errors),
                )

            transactions.extend(page_transactions)
            seen.update(t.id for t in page_transactions)
            pages += 1
            if page.items:
                cursor = page.items[-1]["id"]
            if not page.has_more or not page.items:
                break

        logger.info(
            "transaction_fetch_completed",
            extra={"pages_fetched": pages, "transaction_count": len(transactions)},
        )
        return FetchResult(
            transactions=tuple(transactions),
            complete=True,
            pages_fetched=pages,
        )

    def _expand_page(self, page: ProcessorPage, seen: set[str]) -> list[RawTransaction]:
        result: list[RawTransaction] = []
        page_ids: set[str] = set()
        for item in page.items:
            tx_id = item["id"]
            if item.get("status") != SUCCEEDED or tx_id in seen or tx_id in page_ids:
                continue
            charge = self._with_retry("get_charge", lambda: self._client.get_charge(tx_id))
            result.append(self._to_raw(item, charge))
            page_ids.add(tx_id)
        return result

    def _to_raw(self, item: dict[str, Any], charge: ChargeInfo | None) -> RawTransaction:
        currency = item.get("currency") or self._config.currency
        amount_minor = item.get("amount_received") or item.get("amount") or 0
        refunded_minor = charge.amount_refunded if charge else 0
        fee = (
            money_from_minor_units(charge.fee, currency)
            if charge is not None and charge.fee is not None
            else None
        )
        return RawTransaction(
            id=item["id"],
            amount=money_from_minor_units(int(amount_minor), currency),
            currency=currency,
            status=item.get("status", ""),
            created_at=datetime.fromtimestamp(int(item.get("created", 0)), tz=timezone.utc),
            description=item.get("description") or (charge.description if charge else None),
            metadata={k: str(v) for k, v in (item.get("metadata") or {}).items()},
            refunded=bool(charge.refunded) if charge else False,
            refunded_amount=money_from_minor_units(refunded_minor, currency),
            customer_email=(charge.billing_email if charge else None) or item.get("receipt_email"),
            processor_fee=fee,
        )

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = self._config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except TransientProcessorError as exc:
                if attempt == attempts:
                    raise
                delay = self._config.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "processor_call_retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _validate_range(self, start: datetime, end: datetime) -> None:
        if start >= end:
            raise InvalidDateRangeError(str(start), str(end), "start must be before end")
        if end - start > timedelta(days=self._config.max_range_days):
            raise InvalidDateRangeError(
                str(start), str(end), f"range exceeds {self._config.max_range_days} days"
            )
