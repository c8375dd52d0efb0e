"""
Booking service: hold creation and every booking state transition.

TRANSITION STRATEGY: Guarded Compare-and-Swap with Retry
========================================================

Problem:
  The same booking can be touched at once by a client verify call, one or
  more webhook deliveries (possibly duplicated or out of order) and the
  reconciliation sweep. Applying `booking.state = x; save()` from each of
  them would let a stale writer undo a newer outcome.

Solution:
  Each transition is:

  1. Read the booking (state, version)
  2. Validate the graph edge and the trigger's guard against that snapshot
  3. ledger.compare_and_swap(id, version, ...) -> state, version + 1
  4. On VersionConflict reread and revalidate. If the fresh state already
     reflects the intended outcome (e.g. the webhook confirmed the booking
     while the client's verify call was in flight) return it as a no-op.

  Guard failures raise InvalidTransition and are logged; they are how
  duplicated gateway callbacks, replays and operator mistakes surface.

  A pending hold past `hold_expires_at` is treated as expired by every guard
  even before the sweep persists it. A late but validly signed payment is
  still rejected.

Gateway calls (create order, refund) happen outside any transaction and are
made at-most-once through the idempotency guard.
"""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from ticketpay.core.clock import Clock, ensure_utc, utcnow
from ticketpay.core.config import Settings, get_settings
from ticketpay.core.errors import (
    BookingError,
    DuplicateKey,
    GatewayRejected,
    InvalidArgument,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    RetryExhausted,
    VersionConflict,
)
from ticketpay.core.logging import get_logger
from ticketpay.core.metrics import (
    record_hold,
    record_signature_failure,
    record_transition,
    record_version_conflict,
)
from ticketpay.models.booking import Booking, BookingState
from ticketpay.models.refund import Refund
from ticketpay.services import signature
from ticketpay.services.catalog import Catalog
from ticketpay.services.idempotency import HOLD_SCOPE, REFUND_SCOPE, Claim, IdempotencyGuard
from ticketpay.services.interfaces.gateway import GatewayPayment, GatewayRefund, PaymentGateway
from ticketpay.services.ledger import LedgerStore
from ticketpay.services.state_machine import BookingTrigger, target_state

logger = get_logger(__name__)


@dataclass
class HoldResult:
    booking: Booking
    replayed: bool


@dataclass
class TransitionResult:
    booking: Booking
    applied: bool


def hold_fingerprint(event_id: int, user_id: int, ticket_count: int) -> str:
    return hashlib.sha256(f"{event_id}:{user_id}:{ticket_count}".encode()).hexdigest()


class BookingService:
    def __init__(
        self,
        ledger: LedgerStore,
        guard: IdempotencyGuard,
        gateway: PaymentGateway,
        catalog: Catalog,
        *,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        settings = settings or get_settings()
        self._ledger = ledger
        self._guard = guard
        self._gateway = gateway
        self._catalog = catalog
        self._clock = clock
        self._hold_duration = timedelta(minutes=settings.HOLD_DURATION_MINUTES)
        self._max_cas_attempts = settings.CAS_MAX_ATTEMPTS
        self._key_secret = settings.RAZORPAY_KEY_SECRET
        self._default_currency = settings.DEFAULT_CURRENCY

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def create_hold(
        self,
        event_id: int,
        user_id: int,
        ticket_count: int,
        idempotency_key: str,
        now: Optional[datetime] = None,
    ) -> HoldResult:
        """
        Place a pending hold and create its gateway order.
        Replaying an idempotency key returns the original booking without a second order.
        """
        now = ensure_utc(now or self._clock())
        if ticket_count is None or ticket_count <= 0:
            record_hold("rejected")
            raise InvalidArgument("ticket_count must be a positive integer")
        if not idempotency_key or not idempotency_key.strip():
            record_hold("rejected")
            raise InvalidArgument("idempotency_key is required")

        fingerprint = hold_fingerprint(event_id, user_id, ticket_count)
        claim = await self._guard.acquire(HOLD_SCOPE, idempotency_key, fingerprint)
        if claim.fingerprint is not None and claim.fingerprint != fingerprint:
            if claim.is_new:
                # Took over a crashed claim that belonged to a different request.
                await self._guard.release(claim)
            record_hold("rejected")
            logger.warning("idempotency_key_reused", idempotency_key=idempotency_key)
            raise InvalidArgument("idempotency_key was already used for a different hold request")
        if not claim.is_new:
            return await self._replay_hold(claim)

        try:
            booking = await self._place_hold(event_id, user_id, ticket_count, idempotency_key, now)
        except Exception:
            await self._guard.release(claim)
            raise

        await self._guard.complete(claim, booking.id)
        record_hold("created")
        return HoldResult(booking=booking, replayed=False)

    async def _replay_hold(self, claim: Claim) -> HoldResult:
        booking_id = claim.result_id or await self._guard.wait_for_result(HOLD_SCOPE, claim.key)
        booking = await self._ledger.get(booking_id)
        record_hold("replayed")
        logger.info("hold_replayed", booking_id=booking.id, idempotency_key=claim.key)
        return HoldResult(booking=booking, replayed=True)

    async def _place_hold(
        self,
        event_id: int,
        user_id: int,
        ticket_count: int,
        idempotency_key: str,
        now: datetime,
    ) -> Booking:
        event = await self._catalog.get_event(event_id)
        await self._catalog.get_user(user_id)

        # Price is read once here and frozen on the booking.
        amount = int(event.ticket_price) * ticket_count
        if amount <= 0:
            record_hold("rejected")
            raise InvalidArgument("Hold amount must be positive")
        currency = event.currency or self._default_currency

        booking_id = str(uuid.uuid4())
        order = await self._gateway.create_order(
            amount,
            currency,
            receipt=booking_id,
            notes={
                "booking_id": booking_id,
                "event_id": event_id,
                "user_id": user_id,
                "ticket_count": ticket_count,
            },
        )
        if order.amount != amount:
            logger.error(
                "gateway_order_amount_mismatch",
                booking_id=booking_id,
                gateway_order_id=order.order_id,
                expected=amount,
                actual=order.amount,
            )
            raise GatewayRejected(booking_id=booking_id)

        booking = Booking(
            id=booking_id,
            event_id=event_id,
            user_id=user_id,
            ticket_count=ticket_count,
            amount=amount,
            currency=currency,
            state=BookingState.PENDING.value,
            gateway_order_id=order.order_id,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
            hold_expires_at=now + self._hold_duration,
            version=1,
            reconcile_attempts=0,
            needs_review=False,
        )
        try:
            booking = await self._ledger.create(booking)
        except DuplicateKey:
            existing = await self._ledger.find_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            # A takeover raced a slow original; the extra order is never paid.
            logger.warning(
                "hold_created_concurrently",
                booking_id=existing.id,
                orphan_order_id=order.order_id,
            )
            return existing

        logger.info(
            "hold_created",
            booking_id=booking.id,
            event_id=event_id,
            user_id=user_id,
            ticket_count=ticket_count,
            amount=amount,
            currency=currency,
            gateway_order_id=order.order_id,
            hold_expires_at=ensure_utc(booking.hold_expires_at).isoformat(),
        )
        return booking

    # ------------------------------------------------------------------
    # Payment callbacks
    # ------------------------------------------------------------------

    async def verify_payment(
        self,
        booking_id: str,
        order_id: str,
        payment_id: str,
        signature_value: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Client-side checkout verification.
        Checked in order: hold expiry, signature, order match.
        """
        now = ensure_utc(now or self._clock())
        booking = await self._ledger.get(booking_id)

        if booking.is_hold_expired(now):
            logger.warning(
                "late_payment_on_expired_hold",
                booking_id=booking_id,
                gateway_payment_id=payment_id,
                hold_expires_at=ensure_utc(booking.hold_expires_at).isoformat(),
            )
            raise self._rejected(booking, BookingTrigger.PAYMENT_VERIFIED, "Hold has expired", state=BookingState.EXPIRED)

        if not signature.verify(signature.payment_payload(order_id, payment_id), signature_value, self._key_secret):
            record_signature_failure("verify")
            logger.warning("signature_rejected", source="verify", booking_id=booking_id)
            raise InvalidSignature(booking_id=booking_id)

        result = await self._confirm(booking_id, order_id, payment_id, now)
        return result.booking

    async def confirm_captured_payment(
        self,
        order_id: str,
        payment_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Webhook `payment.captured`: the webhook signature already authenticated the payload."""
        now = ensure_utc(now or self._clock())
        booking = await self._booking_for_order(order_id)
        return await self._confirm(booking.id, order_id, payment_id, now, amount=amount)

    async def fail_payment(
        self,
        order_id: str,
        payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Webhook `payment.failed`."""
        now = ensure_utc(now or self._clock())
        booking = await self._booking_for_order(order_id)
        logger.info("payment_failure_reported", booking_id=booking.id, gateway_payment_id=payment_id)
        return await self._apply(
            booking.id,
            BookingTrigger.PAYMENT_FAILED,
            now=now,
            already_applied=lambda current: current.state == BookingState.FAILED.value,
        )

    async def _confirm(
        self,
        booking_id: str,
        order_id: str,
        payment_id: str,
        now: datetime,
        amount: Optional[int] = None,
    ) -> TransitionResult:
        def guard(current: Booking) -> None:
            if current.gateway_order_id != order_id:
                raise InvalidTransition(
                    "Payment does not belong to this booking's order",
                    booking_id=current.id,
                    current_state=current.state,
                    trigger=BookingTrigger.PAYMENT_VERIFIED.value,
                )
            if amount is not None and amount != current.amount:
                raise InvalidTransition(
                    "Captured amount does not match the booking amount",
                    booking_id=current.id,
                    current_state=current.state,
                    trigger=BookingTrigger.PAYMENT_VERIFIED.value,
                )

        return await self._apply(
            booking_id,
            BookingTrigger.PAYMENT_VERIFIED,
            now=now,
            guard=guard,
            changes=lambda current: {"gateway_payment_id": payment_id},
            already_applied=lambda current: (
                current.state in (BookingState.CONFIRMED.value, BookingState.REFUNDED.value)
                and current.gateway_payment_id == payment_id
            ),
        )

    # ------------------------------------------------------------------
    # Cancellation, expiry, refunds
    # ------------------------------------------------------------------

    async def cancel(self, booking_id: str, now: Optional[datetime] = None) -> Booking:
        """Cancel an unpaid hold. Paid bookings are refunded instead."""
        now = ensure_utc(now or self._clock())
        result = await self._apply(
            booking_id,
            BookingTrigger.CANCEL,
            now=now,
            already_applied=lambda current: current.state == BookingState.CANCELLED.value,
        )
        return result.booking

    async def expire_hold(self, booking_id: str, now: Optional[datetime] = None) -> TransitionResult:
        now = ensure_utc(now or self._clock())

        def guard(current: Booking) -> None:
            if not now > ensure_utc(current.hold_expires_at):
                raise InvalidTransition(
                    "Hold has not expired yet",
                    booking_id=current.id,
                    current_state=current.state,
                    trigger=BookingTrigger.HOLD_EXPIRED.value,
                )

        return await self._apply(
            booking_id,
            BookingTrigger.HOLD_EXPIRED,
            now=now,
            guard=guard,
            already_applied=lambda current: current.state == BookingState.EXPIRED.value,
        )

    async def refund(
        self,
        booking_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Refund a confirmed booking, fully or partially.
        Only one gateway refund is ever issued per booking.
        """
        now = ensure_utc(now or self._clock())
        booking = await self._ledger.get(booking_id)

        if booking.state == BookingState.REFUNDED.value:
            record_transition(BookingTrigger.REFUND.value, "noop")
            return booking
        if booking.state != BookingState.CONFIRMED.value:
            raise self._rejected(booking, BookingTrigger.REFUND)

        refund_amount = booking.amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > booking.amount:
            raise InvalidArgument(
                "Refund amount must be positive and at most the booking amount",
                booking_id=booking_id,
            )

        claim = await self._guard.acquire(REFUND_SCOPE, booking_id, fingerprint=str(refund_amount))
        if not claim.is_new:
            if claim.result_id is None:
                await self._guard.wait_for_result(REFUND_SCOPE, booking_id)
            return await self._ledger.get(booking_id)

        reason = reason or "Customer requested refund"
        try:
            gateway_refund = await self._gateway.refund(
                booking.gateway_payment_id,
                None if refund_amount == booking.amount else refund_amount,
                notes={"booking_id": booking_id, "reason": reason},
            )
        except Exception as exc:
            await self._guard.release(claim)
            if isinstance(exc, BookingError) and exc.booking_id is None:
                exc.booking_id = booking_id
            raise

        logger.info(
            "refund_issued",
            booking_id=booking_id,
            gateway_refund_id=gateway_refund.refund_id,
            amount=gateway_refund.amount,
            status=gateway_refund.status,
        )
        try:
            result = await self._record_refund(booking_id, gateway_refund, reason, now)
        finally:
            # The money moved; never let a retry issue a second refund.
            await self._guard.complete(claim, gateway_refund.refund_id)
        return result.booking

    async def record_gateway_refund(
        self,
        payment_id: str,
        refund_id: str,
        amount: int,
        status: str = "processed",
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Webhook `refund.created`, including echoes of refunds issued by refund()."""
        now = ensure_utc(now or self._clock())
        booking = await self._ledger.find_by_payment_id(payment_id)
        if booking is None:
            raise NotFound(f"No booking for payment {payment_id}")

        gateway_refund = GatewayRefund(refund_id=refund_id, payment_id=payment_id, amount=amount, status=status)
        return await self._record_refund(booking.id, gateway_refund, "Refund reported by gateway", now)

    async def _record_refund(
        self,
        booking_id: str,
        gateway_refund: GatewayRefund,
        reason: Optional[str],
        now: datetime,
    ) -> TransitionResult:
        return await self._apply(
            booking_id,
            BookingTrigger.REFUND,
            now=now,
            changes=lambda current: {"refunded_amount": gateway_refund.amount},
            already_applied=lambda current: current.state == BookingState.REFUNDED.value,
            attach=lambda current: [
                Refund(
                    booking_id=booking_id,
                    gateway_refund_id=gateway_refund.refund_id,
                    amount=gateway_refund.amount,
                    status=gateway_refund.status,
                    reason=reason,
                    created_at=now,
                )
            ],
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str) -> Booking:
        return await self._ledger.get(booking_id)

    async def list_user_bookings(self, user_id: int) -> list[Booking]:
        return await self._ledger.list_for_user(user_id)

    async def fetch_order_payments(self, order_id: str) -> list[GatewayPayment]:
        """Payments the gateway holds for one of our orders."""
        await self._booking_for_order(order_id)
        return await self._gateway.fetch_payments(order_id)

    # ------------------------------------------------------------------
    # Transition engine
    # ------------------------------------------------------------------

    async def _booking_for_order(self, order_id: str) -> Booking:
        booking = await self._ledger.find_by_order_id(order_id)
        if booking is None:
            raise NotFound(f"No booking for order {order_id}")
        return booking

    def _rejected(
        self,
        booking: Booking,
        trigger: BookingTrigger,
        message: Optional[str] = None,
        state: Optional[BookingState] = None,
    ) -> InvalidTransition:
        current_state = (state or BookingState(booking.state)).value
        record_transition(trigger.value, "rejected")
        logger.warning(
            "invalid_transition",
            booking_id=booking.id,
            state=current_state,
            trigger=trigger.value,
            reason=message,
        )
        return InvalidTransition(message, booking_id=booking.id, current_state=current_state, trigger=trigger.value)

    async def _apply(
        self,
        booking_id: str,
        trigger: BookingTrigger,
        *,
        now: datetime,
        guard: Optional[Callable[[Booking], None]] = None,
        changes: Optional[Callable[[Booking], dict]] = None,
        already_applied: Optional[Callable[[Booking], bool]] = None,
        attach: Optional[Callable[[Booking], Iterable[object]]] = None,
    ) -> TransitionResult:
        for attempt in range(1, self._max_cas_attempts + 1):
            booking = await self._ledger.get(booking_id)

            if already_applied is not None and already_applied(booking):
                record_transition(trigger.value, "noop")
                logger.info("booking_transition_noop", booking_id=booking_id, state=booking.state, trigger=trigger.value)
                return TransitionResult(booking=booking, applied=False)

            if trigger != BookingTrigger.HOLD_EXPIRED and booking.is_hold_expired(now):
                raise self._rejected(booking, trigger, "Hold has expired", state=BookingState.EXPIRED)

            try:
                target = target_state(booking.state, trigger, booking_id=booking_id)
                if guard is not None:
                    guard(booking)
            except InvalidTransition as exc:
                raise self._rejected(booking, trigger, exc.message) from None

            field_changes = dict(changes(booking)) if changes is not None else {}
            field_changes["state"] = target
            try:
                updated = await self._ledger.compare_and_swap(
                    booking_id,
                    booking.version,
                    lambda current: field_changes,
                    trigger=trigger,
                    attach=attach(booking) if attach is not None else (),
                )
            except VersionConflict:
                record_version_conflict()
                logger.info(
                    "booking_transition_retry",
                    booking_id=booking_id,
                    trigger=trigger.value,
                    attempt=attempt,
                    reason="version_conflict",
                )
                continue

            record_transition(trigger.value, "applied")
            logger.info(
                "booking_transition",
                booking_id=booking_id,
                from_state=booking.state,
                to_state=target.value,
                trigger=trigger.value,
                version=updated.version,
            )
            return TransitionResult(booking=updated, applied=True)

        logger.error("booking_transition_exhausted", booking_id=booking_id, trigger=trigger.value)
        raise RetryExhausted(booking_id=booking_id)
