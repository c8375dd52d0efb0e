"""
Tests for the ledger store: inserts, compare-and-swap and the expiry cursor.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from ticketpay.core.errors import DuplicateKey, NotFound, VersionConflict
from ticketpay.models.booking import Booking, BookingState
from ticketpay.models.refund import Refund
from ticketpay.models.webhook_event import WebhookEvent
from ticketpay.services.state_machine import BookingTrigger

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_booking(**overrides) -> Booking:
    booking_id = overrides.pop("id", None) or str(uuid.uuid4())
    values = dict(
        id=booking_id,
        event_id=1,
        user_id=1,
        ticket_count=1,
        amount=50000,
        currency="INR",
        state=BookingState.PENDING.value,
        gateway_order_id=f"order_{booking_id[:8]}",
        idempotency_key=f"key-{booking_id}",
        hold_expires_at=NOW + timedelta(minutes=15),
        created_at=NOW,
        updated_at=NOW,
        version=1,
        reconcile_attempts=0,
        needs_review=False,
    )
    values.update(overrides)
    return Booking(**values)


def confirm(payment_id="pay_1"):
    return lambda booking: {"state": BookingState.CONFIRMED, "gateway_payment_id": payment_id}


@pytest.mark.asyncio
async def test_create_and_get(ledger):
    booking = await ledger.create(make_booking(idempotency_key="k-1"))
    fetched = await ledger.get(booking.id)
    assert fetched.idempotency_key == "k-1"
    assert fetched.version == 1
    assert fetched.refunds == []


@pytest.mark.asyncio
async def test_get_missing_booking(ledger):
    with pytest.raises(NotFound):
        await ledger.get("missing")


@pytest.mark.asyncio
async def test_duplicate_idempotency_key(ledger):
    await ledger.create(make_booking(idempotency_key="same"))
    with pytest.raises(DuplicateKey):
        await ledger.create(make_booking(idempotency_key="same"))


@pytest.mark.asyncio
async def test_lookups_by_key_order_and_payment(ledger):
    booking = await ledger.create(make_booking(idempotency_key="k-2", gateway_order_id="order_x"))
    await ledger.compare_and_swap(booking.id, 1, confirm("pay_x"), trigger=BookingTrigger.PAYMENT_VERIFIED)

    assert (await ledger.find_by_idempotency_key("k-2")).id == booking.id
    assert (await ledger.find_by_order_id("order_x")).id == booking.id
    assert (await ledger.find_by_payment_id("pay_x")).id == booking.id
    assert await ledger.find_by_order_id("order_unknown") is None


@pytest.mark.asyncio
async def test_compare_and_swap_bumps_version_and_audits(ledger):
    booking = await ledger.create(make_booking())

    updated = await ledger.compare_and_swap(
        booking.id, 1, confirm(), trigger=BookingTrigger.PAYMENT_VERIFIED
    )
    assert updated.state == "confirmed"
    assert updated.gateway_payment_id == "pay_1"
    assert updated.version == 2

    transitions = await ledger.transitions_for(booking.id)
    assert [(t.from_state, t.to_state, t.trigger, t.version) for t in transitions] == [
        ("pending", "confirmed", "payment_verified", 2)
    ]


@pytest.mark.asyncio
async def test_compare_and_swap_stale_version(ledger):
    booking = await ledger.create(make_booking())
    await ledger.compare_and_swap(booking.id, 1, confirm(), trigger=BookingTrigger.PAYMENT_VERIFIED)

    with pytest.raises(VersionConflict):
        await ledger.compare_and_swap(
            booking.id, 1, lambda b: {"state": BookingState.CANCELLED}, trigger=BookingTrigger.CANCEL
        )

    current = await ledger.get(booking.id)
    assert current.state == "confirmed"
    assert current.version == 2
    assert len(await ledger.transitions_for(booking.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_compare_and_swap_single_winner(ledger):
    """Two writers at the same version: exactly one lands."""
    booking = await ledger.create(make_booking())

    results = await asyncio.gather(
        ledger.compare_and_swap(booking.id, 1, confirm(), trigger=BookingTrigger.PAYMENT_VERIFIED),
        ledger.compare_and_swap(
            booking.id, 1, lambda b: {"state": BookingState.CANCELLED}, trigger=BookingTrigger.CANCEL
        ),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, VersionConflict)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    assert (await ledger.get(booking.id)).version == 2


@pytest.mark.asyncio
async def test_compare_and_swap_rejects_immutable_fields(ledger):
    booking = await ledger.create(make_booking())
    with pytest.raises(ValueError):
        await ledger.compare_and_swap(
            booking.id, 1, lambda b: {"state": BookingState.CANCELLED, "amount": 1}, trigger=BookingTrigger.CANCEL
        )
    current = await ledger.get(booking.id)
    assert current.amount == 50000
    assert current.version == 1


@pytest.mark.asyncio
async def test_compare_and_swap_writes_attachments(ledger):
    booking = await ledger.create(make_booking())
    booking = await ledger.compare_and_swap(booking.id, 1, confirm(), trigger=BookingTrigger.PAYMENT_VERIFIED)

    refunded = await ledger.compare_and_swap(
        booking.id,
        2,
        lambda b: {"state": BookingState.REFUNDED, "refunded_amount": 50000},
        trigger=BookingTrigger.REFUND,
        attach=[Refund(booking_id=booking.id, gateway_refund_id="rfnd_1", amount=50000, status="processed")],
    )
    assert refunded.state == "refunded"
    assert [r.gateway_refund_id for r in refunded.refunds] == ["rfnd_1"]


@pytest.mark.asyncio
async def test_find_expired_pending_pages_through_everything(ledger):
    expired_ids = set()
    for minutes in range(5):
        booking = await ledger.create(make_booking(hold_expires_at=NOW - timedelta(minutes=minutes + 1)))
        expired_ids.add(booking.id)

    await ledger.create(make_booking(hold_expires_at=NOW + timedelta(minutes=5)))
    await ledger.create(make_booking(hold_expires_at=NOW - timedelta(minutes=1), needs_review=True))
    confirmed = await ledger.create(make_booking(hold_expires_at=NOW - timedelta(minutes=1)))
    await ledger.compare_and_swap(confirmed.id, 1, confirm("pay_c"), trigger=BookingTrigger.PAYMENT_VERIFIED)

    seen = [booking.id async for booking in ledger.find_expired_pending(NOW, batch_size=2)]
    assert set(seen) == expired_ids
    assert seen == sorted(seen)


@pytest.mark.asyncio
async def test_find_expired_pending_tolerates_rows_leaving(ledger):
    for minutes in range(4):
        await ledger.create(make_booking(hold_expires_at=NOW - timedelta(minutes=minutes + 1)))

    seen = []
    async for booking in ledger.find_expired_pending(NOW, batch_size=2):
        seen.append(booking.id)
        await ledger.compare_and_swap(
            booking.id, booking.version, lambda b: {"state": BookingState.EXPIRED}, trigger=BookingTrigger.HOLD_EXPIRED
        )
    assert len(seen) == 4


@pytest.mark.asyncio
async def test_record_reconcile_failure_flags_at_limit(ledger):
    booking = await ledger.create(make_booking())

    assert await ledger.record_reconcile_failure(booking.id, max_attempts=2) == (1, False)
    assert await ledger.record_reconcile_failure(booking.id, max_attempts=2) == (2, True)
    assert [b.id for b in await ledger.list_flagged()] == [booking.id]


@pytest.mark.asyncio
async def test_webhook_event_recorded_once_and_processed_once(ledger):
    event = WebhookEvent(
        gateway_event_id="evt_1",
        event_type="payment.captured",
        raw_payload=b"{}",
        payload_hash="h",
        received_at=NOW,
    )
    await ledger.record_webhook_event(event)
    with pytest.raises(DuplicateKey):
        await ledger.record_webhook_event(
            WebhookEvent(gateway_event_id="evt_1", event_type="payment.captured", raw_payload=b"{}", payload_hash="h")
        )

    assert [e.gateway_event_id for e in await ledger.find_unprocessed_webhooks(NOW + timedelta(seconds=1))] == ["evt_1"]
    assert await ledger.mark_webhook_processed("evt_1", "applied", NOW)
    assert not await ledger.mark_webhook_processed("evt_1", "noop", NOW)

    stored = await ledger.get_webhook_event("evt_1")
    assert stored.processing_result == "applied"
    assert await ledger.find_unprocessed_webhooks(NOW + timedelta(seconds=1)) == []
