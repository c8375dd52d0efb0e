"""
Ledger store: durable booking records and webhook events.

CONCURRENCY STRATEGY: Optimistic Locking, no in-process locks
=============================================================

Problem:
  A client verify call and a gateway webhook for the same payment can arrive
  at the same time, and a reconciliation sweep can try to expire the same
  hold a moment later. Plain read-modify-write would let the last writer win.

Solution:
  Every state change goes through compare_and_swap():

  1. Read the booking and check that its version is the one the caller
     validated its guard against
  2. UPDATE bookings SET state = :new, version = version + 1
     WHERE id = :id AND version = :expected
  3. If rows_affected == 0, someone else moved the booking first ->
     VersionConflict, the caller rereads and revalidates

  The audit row and any attached records (refunds) are written in the same
  transaction, so they exist iff the transition happened.

Each method opens its own short transaction from the session factory. Callers
never hold a transaction across a payment-gateway call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Iterable, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpay.core.clock import utcnow
from ticketpay.core.errors import DuplicateKey, NotFound, VersionConflict
from ticketpay.core.logging import get_logger
from ticketpay.models.booking import Booking, BookingState
from ticketpay.models.transition import BookingTransition
from ticketpay.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

# Everything else on a booking is frozen once the hold exists.
MUTABLE_FIELDS = frozenset({"state", "gateway_payment_id", "refunded_amount"})

Mutator = Callable[[Booking], Mapping[str, object]]


def _plain(value):
    return value.value if isinstance(value, Enum) else value


@dataclass
class BookingStats:
    by_state: dict[str, int] = field(default_factory=dict)
    captured_amount: int = 0
    refunded_amount: int = 0
    needs_review: int = 0

    @property
    def total(self) -> int:
        return sum(self.by_state.values())

    @property
    def net_amount(self) -> int:
        return self.captured_amount - self.refunded_amount


class LedgerStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def create(self, booking: Booking) -> Booking:
        """Insert a new booking. Raises DuplicateKey if its idempotency key (or order) exists."""
        async with self._sessions() as session:
            session.add(booking)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKey(
                    "A booking already exists for this idempotency key",
                    booking_id=booking.id,
                ) from exc

        logger.info(
            "booking_stored",
            booking_id=booking.id,
            idempotency_key=booking.idempotency_key,
            gateway_order_id=booking.gateway_order_id,
        )
        return await self.get(booking.id)

    async def get(self, booking_id: str) -> Booking:
        booking = await self._fetch_one(Booking.id == booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found", booking_id=booking_id)
        return booking

    async def find_by_idempotency_key(self, key: str) -> Optional[Booking]:
        return await self._fetch_one(Booking.idempotency_key == key)

    async def find_by_order_id(self, order_id: str) -> Optional[Booking]:
        return await self._fetch_one(Booking.gateway_order_id == order_id)

    async def find_by_payment_id(self, payment_id: str) -> Optional[Booking]:
        return await self._fetch_one(Booking.gateway_payment_id == payment_id)

    async def list_for_user(self, user_id: int) -> list[Booking]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Booking)
                .where(Booking.user_id == user_id)
                .order_by(Booking.created_at.desc(), Booking.id)
            )
            return list(result.scalars().all())

    async def list_bookings(
        self,
        state: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Booking], int]:
        """All bookings newest first, optionally in one stored state. Returns (page, total)."""
        query = select(Booking)
        if state is not None:
            query = query.where(Booking.state == _plain(state))

        async with self._sessions() as session:
            total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
            result = await session.execute(
                query
                .order_by(Booking.created_at.desc(), Booking.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total

    async def booking_stats(self) -> BookingStats:
        """
        Counts per stored state and money totals.
        Captured money is every confirmed or refunded booking; refunds are subtracted for the net.
        """
        stats = BookingStats()
        async with self._sessions() as session:
            rows = await session.execute(
                select(
                    Booking.state,
                    func.count(),
                    func.coalesce(func.sum(Booking.amount), 0),
                    func.coalesce(func.sum(Booking.refunded_amount), 0),
                ).group_by(Booking.state)
            )
            for state, count, amount, refunded in rows:
                stats.by_state[state] = count
                if state in (BookingState.CONFIRMED.value, BookingState.REFUNDED.value):
                    stats.captured_amount += int(amount)
                stats.refunded_amount += int(refunded)

            stats.needs_review = (
                await session.execute(select(func.count()).select_from(Booking).where(Booking.needs_review.is_(True)))
            ).scalar_one()
        return stats

    async def compare_and_swap(
        self,
        booking_id: str,
        expected_version: int,
        mutator: Mutator,
        *,
        trigger: str,
        attach: Iterable[object] = (),
    ) -> Booking:
        """
        Apply `mutator`'s changes if the booking is still at `expected_version`.
        This is the only code path that changes a booking's state.
        """
        trigger = _plain(trigger)

        async with self._sessions() as session:
            async with session.begin():
                current = (
                    await session.execute(select(Booking).where(Booking.id == booking_id))
                ).scalar_one_or_none()
                if current is None:
                    raise NotFound(f"Booking {booking_id} not found", booking_id=booking_id)
                if current.version != expected_version:
                    raise VersionConflict(booking_id=booking_id)

                changes = {field: _plain(value) for field, value in mutator(current).items()}
                illegal = set(changes) - MUTABLE_FIELDS
                if illegal:
                    raise ValueError(f"Immutable booking fields cannot change: {sorted(illegal)}")

                from_state = current.state
                new_version = expected_version + 1
                result = await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.version == expected_version)
                    .values(**changes, version=new_version, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise VersionConflict(booking_id=booking_id)

                session.add(
                    BookingTransition(
                        booking_id=booking_id,
                        from_state=from_state,
                        to_state=changes.get("state", from_state),
                        trigger=trigger,
                        version=new_version,
                    )
                )
                for record in attach:
                    session.add(record)

            refreshed = await session.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .execution_options(populate_existing=True)
            )
            return refreshed.scalar_one()

    async def find_expired_pending(
        self,
        now: datetime,
        batch_size: int = 100,
        after: Optional[str] = None,
    ) -> AsyncIterator[Booking]:
        """
        Lazily yield pending holds whose deadline passed, in id order.

        Pages are fetched with keyset pagination (id > last seen id), so the
        scan can resume from `after` and tolerates rows leaving the result set
        while it runs. Bookings flagged for review are skipped.
        """
        cursor = after
        while True:
            stmt = (
                select(Booking)
                .where(
                    Booking.state == BookingState.PENDING.value,
                    Booking.hold_expires_at < now,
                    Booking.needs_review.is_(False),
                )
                .order_by(Booking.id)
                .limit(batch_size)
            )
            if cursor is not None:
                stmt = stmt.where(Booking.id > cursor)

            async with self._sessions() as session:
                batch = list((await session.execute(stmt)).scalars().all())

            for booking in batch:
                yield booking

            if len(batch) < batch_size:
                return
            cursor = batch[-1].id

    async def record_reconcile_failure(self, booking_id: str, max_attempts: int) -> tuple[int, bool]:
        """Count a failed sweep attempt; flag the booking for review once `max_attempts` is reached."""
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id)
                    .values(reconcile_attempts=Booking.reconcile_attempts + 1)
                )
                attempts = (
                    await session.execute(select(Booking.reconcile_attempts).where(Booking.id == booking_id))
                ).scalar_one()
                flagged = attempts >= max_attempts
                if flagged:
                    await session.execute(
                        update(Booking).where(Booking.id == booking_id).values(needs_review=True)
                    )
        return attempts, flagged

    async def flag_for_review(self, booking_id: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(Booking).where(Booking.id == booking_id).values(needs_review=True)
                )

    async def list_flagged(self) -> list[Booking]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Booking).where(Booking.needs_review.is_(True)).order_by(Booking.updated_at.desc())
            )
            return list(result.scalars().all())

    async def transitions_for(self, booking_id: str) -> list[BookingTransition]:
        async with self._sessions() as session:
            result = await session.execute(
                select(BookingTransition)
                .where(BookingTransition.booking_id == booking_id)
                .order_by(BookingTransition.version)
            )
            return list(result.scalars().all())

    async def _fetch_one(self, *criteria) -> Optional[Booking]:
        async with self._sessions() as session:
            result = await session.execute(select(Booking).where(*criteria))
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        async with self._sessions() as session:
            session.add(event)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKey(f"Webhook event {event.gateway_event_id} already recorded") from exc
        return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        async with self._sessions() as session:
            result = await session.execute(
                select(WebhookEvent).where(WebhookEvent.gateway_event_id == event_id)
            )
            return result.scalar_one_or_none()

    async def flag_webhook_mismatch(self, event_id: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.gateway_event_id == event_id)
                    .values(payload_mismatch=True, needs_review=True)
                )

    async def mark_webhook_processed(
        self,
        event_id: str,
        result: str,
        now: datetime,
        *,
        error: Optional[str] = None,
        needs_review: bool = False,
    ) -> bool:
        """Set processed_at once. Returns False if another worker got there first."""
        values = {"processed_at": now, "processing_result": result, "last_error": error}
        if needs_review:
            values["needs_review"] = True

        async with self._sessions() as session:
            async with session.begin():
                outcome = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.gateway_event_id == event_id,
                        WebhookEvent.processed_at.is_(None),
                    )
                    .values(**values)
                )
        return outcome.rowcount == 1

    async def record_webhook_failure(self, event_id: str, error: str, max_attempts: int) -> tuple[int, bool]:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.gateway_event_id == event_id)
                    .values(attempts=WebhookEvent.attempts + 1, last_error=error[:255])
                )
                attempts = (
                    await session.execute(
                        select(WebhookEvent.attempts).where(WebhookEvent.gateway_event_id == event_id)
                    )
                ).scalar_one()
                flagged = attempts >= max_attempts
                if flagged:
                    await session.execute(
                        update(WebhookEvent)
                        .where(WebhookEvent.gateway_event_id == event_id)
                        .values(needs_review=True)
                    )
        return attempts, flagged

    async def find_unprocessed_webhooks(self, received_before: datetime, limit: int = 100) -> list[WebhookEvent]:
        async with self._sessions() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.processed_at.is_(None),
                    WebhookEvent.needs_review.is_(False),
                    WebhookEvent.received_at < received_before,
                )
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_flagged_webhooks(self) -> list[WebhookEvent]:
        async with self._sessions() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.needs_review.is_(True))
                .order_by(WebhookEvent.received_at.desc())
            )
            return list(result.scalars().all())
