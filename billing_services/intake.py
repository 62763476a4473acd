"""
Module: billing_services.intake
Responsibility: The synchronous acknowledgment path for processor
    webhooks: verify the signature, validate the envelope, insert one
    queue row.  Nothing else happens before the processor gets its 200.

Invariants enforced:
    - Unsigned or badly signed bodies never reach the queue.
    - The queue row holds the body exactly as received (parsed JSON),
      keyed by the processor's event id.

Failure modes:
    - WebhookConfigurationError: no signing secret configured (HTTP 500).
    - WebhookSignatureError: missing header or verification failure (400).
    - MalformedWebhookError: verified body lacks id / type / data.object (400).
"""

from __future__ import annotations

import json
from dataclasses import dataclass

import stripe
from sqlalchemy.orm import Session

from billing_config.schema import ProcessorConfig, QueueConfig
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    MalformedWebhookError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_services._event_types import EventStatus
from billing_services.event_queue import EventQueue

logger = get_logger("services.intake")


@dataclass(frozen=True)
class IntakeResult:
    event_id: str
    event_type: str
    enqueued: bool
    status: EventStatus


class WebhookIntake:
    """Verifies and enqueues processor notifications."""

    def __init__(
        self,
        session: Session,
        processor: ProcessorConfig,
        queue_config: QueueConfig | None = None,
        clock: Clock | None = None,
    ):
        self._processor = processor
        self._queue = EventQueue(session, queue_config, clock)

    def receive(self, raw_body: bytes, signature: str | None) -> IntakeResult:
        secret = self._processor.webhook_secret
        if not secret:
            logger.error("webhook_secret_missing")
            raise WebhookConfigurationError()
        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookSignatureError("missing signature header")

        try:
            stripe.Webhook.construct_event(
                raw_body,
                signature,
                secret,
                tolerance=self._processor.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid", extra={"reason": str(exc)})
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise MalformedWebhookError(f"body is not valid JSON: {exc}") from exc

        envelope = parse_envelope(raw_body)
        event_id = envelope["id"]
        event_type = envelope["type"]

        with LogContext.bind(event_id=event_id):
            result = self._queue.enqueue(event_id, event_type, envelope)

        return IntakeResult(
            event_id=event_id,
            event_type=event_type,
            enqueued=result.enqueued,
            status=result.status,
        )


def parse_envelope(raw_body: bytes) -> dict:
    """Decode a verified body and check the fields every route needs."""
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedWebhookError(f"body is not valid JSON: {exc}") from exc

    if not isinstance(envelope, dict):
        raise MalformedWebhookError("envelope is not an object")
    event_id = envelope.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedWebhookError("envelope has no id")
    if not isinstance(envelope.get("type"), str) or not envelope["type"]:
        raise MalformedWebhookError("envelope has no type", event_id)
    data = envelope.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedWebhookError("envelope has no data.object", event_id)
    return envelope
