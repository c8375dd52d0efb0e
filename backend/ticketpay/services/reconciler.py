"""
Reconciliation worker: converges bookings and webhook events the request
path left behind.

Each sweep:
  1. Walks pending holds past their deadline. Before expiring one it asks the
     gateway whether the order was paid after all; a captured payment is
     flagged for review instead of expiring (someone has to refund or honour
     it). Everything else moves to `expired` through the state machine, so a
     booking confirmed mid-scan simply loses the race and is skipped.
  2. Replays webhook events that were acknowledged but never processed
     (process crashed, gateway or database briefly unavailable).

Failures are per booking: logged, counted in `reconcile_attempts` and
retried on later sweeps until RECONCILE_MAX_ATTEMPTS flags the booking for
manual review. One bad booking never stops the scan.

Sweeps never overlap within a process; across processes an optional Redis
lock keeps them apart.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from ticketpay.core.clock import Clock, utcnow
from ticketpay.core.config import Settings, get_settings
from ticketpay.core.errors import GatewayRejected, InvalidTransition, TransientError
from ticketpay.core.logging import get_logger
from ticketpay.core.metrics import (
    bookings_needing_review,
    record_reconcile_booking,
    record_reconcile_sweep,
)
from ticketpay.infrastructure.redis_client import RedisSweepLock
from ticketpay.models.booking import Booking
from ticketpay.services.booking_service import BookingService
from ticketpay.services.interfaces.gateway import PaymentGateway
from ticketpay.services.ledger import LedgerStore
from ticketpay.services.webhook_service import WebhookProcessor

logger = get_logger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    flagged: int = 0
    webhooks_replayed: int = 0
    skipped_overlap: bool = False


class ReconciliationWorker:
    def __init__(
        self,
        ledger: LedgerStore,
        bookings: BookingService,
        webhooks: WebhookProcessor,
        gateway: PaymentGateway,
        *,
        settings: Optional[Settings] = None,
        lock: Optional[RedisSweepLock] = None,
        clock: Clock = utcnow,
    ):
        settings = settings or get_settings()
        self._ledger = ledger
        self._bookings = bookings
        self._webhooks = webhooks
        self._gateway = gateway
        self._lock = lock
        self._clock = clock

        self._interval = settings.RECONCILE_INTERVAL_SECONDS
        self._batch_size = settings.RECONCILE_BATCH_SIZE
        self._max_attempts = settings.RECONCILE_MAX_ATTEMPTS
        self._check_gateway = settings.RECONCILE_CHECK_GATEWAY
        self._replay_grace = timedelta(seconds=settings.WEBHOOK_REPLAY_GRACE_SECONDS)

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep. Returns a report with skipped_overlap set if another sweep holds the slot."""
        if self._running:
            return self._skipped("in_process")

        self._running = True
        try:
            if self._lock is not None and not await self._lock.acquire():
                return self._skipped("lock_held")
            try:
                return await self._sweep(now or self._clock())
            finally:
                if self._lock is not None:
                    await self._lock.release()
        finally:
            self._running = False

    def _skipped(self, reason: str) -> SweepReport:
        record_reconcile_sweep("skipped")
        logger.info("reconcile_sweep_skipped", reason=reason)
        return SweepReport(skipped_overlap=True)

    async def _sweep(self, now: datetime) -> SweepReport:
        start = time.perf_counter()
        report = SweepReport()

        async for booking in self._ledger.find_expired_pending(now, batch_size=self._batch_size):
            await self._reconcile_booking(booking, now, report)

        report.webhooks_replayed = await self._replay_webhooks(now)

        flagged = await self._ledger.list_flagged()
        bookings_needing_review.set(len(flagged))

        elapsed = time.perf_counter() - start
        record_reconcile_sweep("completed", elapsed)
        logger.info("reconcile_sweep_completed", duration_ms=round(elapsed * 1000, 2), **asdict(report))
        return report

    async def _reconcile_booking(self, booking: Booking, now: datetime, report: SweepReport) -> None:
        try:
            if self._check_gateway:
                payments = await self._gateway.fetch_payments(booking.gateway_order_id)
                captured = [payment.payment_id for payment in payments if payment.is_captured]
                if captured:
                    await self._ledger.flag_for_review(booking.id)
                    report.flagged += 1
                    record_reconcile_booking("flagged")
                    logger.warning(
                        "captured_payment_on_expired_hold",
                        booking_id=booking.id,
                        gateway_order_id=booking.gateway_order_id,
                        gateway_payment_ids=captured,
                    )
                    return

            result = await self._bookings.expire_hold(booking.id, now=now)
        except InvalidTransition:
            # Confirmed, cancelled or failed since the scan read it.
            report.skipped += 1
            record_reconcile_booking("skipped")
            logger.info("reconcile_booking_skipped", booking_id=booking.id, reason="state_changed")
            return
        except (TransientError, GatewayRejected) as exc:
            attempts, flagged = await self._record_failure(booking, report)
            logger.warning(
                "reconcile_booking_failed",
                booking_id=booking.id,
                error_code=exc.code,
                attempts=attempts,
                flagged=flagged,
            )
            return
        except Exception:
            attempts, flagged = await self._record_failure(booking, report)
            logger.exception(
                "reconcile_booking_error",
                booking_id=booking.id,
                attempts=attempts,
                flagged=flagged,
            )
            return

        if result.applied:
            report.expired += 1
            record_reconcile_booking("expired")
        else:
            report.skipped += 1
            record_reconcile_booking("skipped")

    async def _record_failure(self, booking: Booking, report: SweepReport) -> tuple[int, bool]:
        attempts, flagged = await self._ledger.record_reconcile_failure(booking.id, self._max_attempts)
        report.failed += 1
        record_reconcile_booking("failed")
        if flagged:
            report.flagged += 1
            record_reconcile_booking("flagged")
        return attempts, flagged

    async def _replay_webhooks(self, now: datetime) -> int:
        events = await self._ledger.find_unprocessed_webhooks(now - self._replay_grace, limit=self._batch_size)
        for event in events:
            try:
                outcome = await self._webhooks.process(event.gateway_event_id, now=now)
            except Exception:
                logger.exception(
                    "webhook_replay_failed",
                    event_id=event.gateway_event_id,
                    event_type=event.event_type,
                )
                continue
            logger.info(
                "webhook_replayed",
                event_id=event.gateway_event_id,
                event_type=event.event_type,
                outcome=outcome,
            )
        return len(events)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="reconciliation-worker")
        logger.info("reconciler_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciler_stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self.run_once()
            except Exception:
                logger.exception("reconcile_sweep_failed")

            elapsed = loop.time() - started
            missed = int(elapsed // self._interval)
            if missed:
                # Ticks that fell inside a long sweep are dropped, not queued.
                for _ in range(missed):
                    record_reconcile_sweep("skipped")
                logger.warning("reconcile_ticks_skipped", missed=missed, duration_seconds=round(elapsed, 2))

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval - (elapsed % self._interval))
            except asyncio.TimeoutError:
                continue
