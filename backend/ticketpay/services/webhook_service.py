"""
Gateway webhook ingestion and processing.

Ingestion and processing are split so the gateway gets its 200 as soon as the
event is durably recorded:

  ingest()   verify the raw body, dedup on the gateway's event id, store the
             exact bytes. A redelivery with the same id but a different body
             is flagged for review and never processed.
  process()  apply the event to its booking. Runs as a background task after
             the ack and again from the reconciliation worker for events
             that are still unprocessed.

Deliveries are at-least-once and unordered. Applying the same event twice,
or an older one after a newer one, can never regress a booking: every
transition goes through the booking state machine.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ticketpay.core.clock import Clock, ensure_utc, utcnow
from ticketpay.core.config import Settings, get_settings
from ticketpay.core.errors import (
    DuplicateKey,
    InvalidArgument,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    TransientError,
)
from ticketpay.core.logging import get_logger
from ticketpay.core.metrics import record_signature_failure, record_webhook
from ticketpay.models.webhook_event import (
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    REFUND_CREATED,
    WebhookEvent,
)
from ticketpay.services import signature
from ticketpay.services.booking_service import BookingService, TransitionResult
from ticketpay.services.idempotency import WEBHOOK_SCOPE, IdempotencyGuard
from ticketpay.services.ledger import LedgerStore

logger = get_logger(__name__)

APPLIED = "applied"
NOOP = "noop"
REJECTED = "rejected"
IGNORED = "ignored"
FAILED = "failed"
ALREADY_PROCESSED = "already_processed"

Handler = Callable[[dict, datetime], Awaitable[TransitionResult]]


@dataclass
class IngestResult:
    event: WebhookEvent
    duplicate: bool


def _entity(data: dict, name: str) -> dict:
    try:
        entity = data["payload"][name]["entity"]
    except (KeyError, TypeError):
        raise InvalidArgument(f"Webhook payload has no {name} entity") from None
    if not isinstance(entity, dict):
        raise InvalidArgument(f"Webhook payload has no {name} entity")
    return entity


def _field(entity: dict, name: str) -> Any:
    value = entity.get(name)
    if value is None or value == "":
        raise InvalidArgument(f"Webhook entity is missing '{name}'")
    return value


def _amount(entity: dict) -> int:
    value = _field(entity, "amount")
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument("Webhook entity amount must be an integer")
    return value


class WebhookProcessor:
    def __init__(
        self,
        ledger: LedgerStore,
        guard: IdempotencyGuard,
        bookings: BookingService,
        *,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        settings = settings or get_settings()
        self._ledger = ledger
        self._guard = guard
        self._bookings = bookings
        self._clock = clock
        self._secret = settings.RAZORPAY_WEBHOOK_SECRET
        self._max_attempts = settings.RECONCILE_MAX_ATTEMPTS
        self._handlers: dict[str, Handler] = {
            PAYMENT_CAPTURED: self._on_payment_captured,
            PAYMENT_FAILED: self._on_payment_failed,
            REFUND_CREATED: self._on_refund_created,
        }

    async def ingest(
        self,
        raw_body: bytes,
        signature_value: Optional[str],
        header_event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        now = ensure_utc(now or self._clock())

        if not signature.verify(raw_body, signature_value, self._secret):
            record_signature_failure("webhook")
            logger.warning("signature_rejected", source="webhook", event_id=header_event_id)
            raise InvalidSignature()

        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise InvalidArgument("Webhook body is not valid JSON") from None
        if not isinstance(data, dict):
            raise InvalidArgument("Webhook body must be a JSON object")

        event_id = header_event_id or data.get("id")
        event_type = data.get("event")
        if not isinstance(event_id, str) or not event_id:
            raise InvalidArgument("Webhook event id is missing")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidArgument("Webhook event type is missing")

        payload_hash = signature.payload_fingerprint(raw_body)
        claim = await self._guard.acquire(WEBHOOK_SCOPE, event_id, payload_hash)
        if not claim.is_new:
            if claim.result_id is None:
                await self._guard.wait_for_result(WEBHOOK_SCOPE, event_id)
            return await self._redelivered(event_id, event_type, payload_hash)

        try:
            event = await self._ledger.record_webhook_event(
                WebhookEvent(
                    gateway_event_id=event_id,
                    event_type=event_type,
                    raw_payload=bytes(raw_body),
                    payload_hash=payload_hash,
                    payload_mismatch=False,
                    received_at=now,
                    attempts=0,
                    needs_review=False,
                )
            )
        except DuplicateKey:
            # Recorded by a caller whose claim lease we took over.
            await self._guard.complete(claim, event_id)
            return await self._redelivered(event_id, event_type, payload_hash)
        except Exception:
            await self._guard.release(claim)
            raise

        await self._guard.complete(claim, event_id)
        record_webhook(event_type, "recorded")
        logger.info("webhook_recorded", event_id=event_id, event_type=event_type)
        return IngestResult(event=event, duplicate=False)

    async def _redelivered(self, event_id: str, event_type: str, payload_hash: str) -> IngestResult:
        event = await self._ledger.get_webhook_event(event_id)
        if event is None:
            raise NotFound(f"Webhook event {event_id} not found")

        if event.payload_hash != payload_hash:
            await self._ledger.flag_webhook_mismatch(event_id)
            record_webhook(event_type, "mismatch")
            logger.warning(
                "webhook_payload_mismatch",
                event_id=event_id,
                event_type=event_type,
                recorded_type=event.event_type,
            )
        else:
            record_webhook(event_type, "duplicate")
            logger.info("webhook_duplicate", event_id=event_id, event_type=event_type)
        return IngestResult(event=event, duplicate=True)

    async def process(self, event_id: str, now: Optional[datetime] = None) -> str:
        """
        Apply a recorded event to its booking and mark it processed.
        Returns the outcome: applied, noop, rejected, ignored, failed or already_processed.
        Only a failure to record the failure itself propagates.
        """
        now = ensure_utc(now or self._clock())
        event = await self._ledger.get_webhook_event(event_id)
        if event is None:
            raise NotFound(f"Webhook event {event_id} not found")
        if event.processed_at is not None:
            return ALREADY_PROCESSED
        if event.payload_mismatch:
            return REJECTED

        handler = self._handlers.get(event.event_type)
        if handler is None:
            await self._ledger.mark_webhook_processed(event_id, IGNORED, now)
            record_webhook(event.event_type, IGNORED)
            logger.info("webhook_ignored", event_id=event_id, event_type=event.event_type)
            return IGNORED

        try:
            result = await handler(json.loads(event.raw_payload), now)
        except (InvalidTransition, NotFound, InvalidArgument) as exc:
            await self._ledger.mark_webhook_processed(
                event_id, REJECTED, now, error=exc.message[:255], needs_review=True
            )
            record_webhook(event.event_type, REJECTED)
            logger.warning(
                "webhook_rejected",
                event_id=event_id,
                event_type=event.event_type,
                error_code=exc.code,
                reason=exc.message,
                booking_id=exc.booking_id,
            )
            return REJECTED
        except TransientError as exc:
            attempts, flagged = await self._ledger.record_webhook_failure(
                event_id, exc.message, self._max_attempts
            )
            record_webhook(event.event_type, FAILED)
            logger.warning(
                "webhook_processing_failed",
                event_id=event_id,
                event_type=event.event_type,
                error_code=exc.code,
                attempts=attempts,
                flagged=flagged,
            )
            return FAILED
        except Exception as exc:
            # Unexpected errors count toward RECONCILE_MAX_ATTEMPTS as well.
            attempts, flagged = await self._ledger.record_webhook_failure(
                event_id, f"{type(exc).__name__}: {exc}", self._max_attempts
            )
            record_webhook(event.event_type, FAILED)
            logger.exception(
                "webhook_processing_error",
                event_id=event_id,
                event_type=event.event_type,
                attempts=attempts,
                flagged=flagged,
            )
            return FAILED

        outcome = APPLIED if result.applied else NOOP
        await self._ledger.mark_webhook_processed(event_id, outcome, now)
        record_webhook(event.event_type, outcome)
        logger.info(
            "webhook_processed",
            event_id=event_id,
            event_type=event.event_type,
            booking_id=result.booking.id,
            state=result.booking.state,
            outcome=outcome,
        )
        return outcome

    async def _on_payment_captured(self, data: dict, now: datetime) -> TransitionResult:
        payment = _entity(data, "payment")
        return await self._bookings.confirm_captured_payment(
            _field(payment, "order_id"),
            _field(payment, "id"),
            _amount(payment),
            now=now,
        )

    async def _on_payment_failed(self, data: dict, now: datetime) -> TransitionResult:
        payment = _entity(data, "payment")
        return await self._bookings.fail_payment(_field(payment, "order_id"), payment.get("id"), now=now)

    async def _on_refund_created(self, data: dict, now: datetime) -> TransitionResult:
        refund = _entity(data, "refund")
        return await self._bookings.record_gateway_refund(
            _field(refund, "payment_id"),
            _field(refund, "id"),
            _amount(refund),
            status=refund.get("status") or "processed",
            now=now,
        )
