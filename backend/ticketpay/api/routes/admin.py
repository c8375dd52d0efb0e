"""
Operator endpoints: read-only booking overview and the manual review queue.

Nothing here mutates a booking. Corrections go through the normal
transitions (cancel, refund) so the audit trail stays complete.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ticketpay.api.dependencies import get_clock, get_ledger
from ticketpay.core.clock import Clock
from ticketpay.models.booking import BookingState
from ticketpay.schemas.booking import BookingResponse
from ticketpay.schemas.review import (
    AdminBookingListResponse,
    BookingStatsResponse,
    FlaggedWebhookResponse,
    ReviewQueueResponse,
)
from ticketpay.services.ledger import LedgerStore

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/bookings", response_model=AdminBookingListResponse)
async def list_bookings(
    state: Optional[BookingState] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Clock = Depends(get_clock),
):
    """
    All bookings, newest first.
    `state` filters on the stored state; a lapsed hold the sweep has not
    reached yet is still listed under pending, with effective_state expired.
    """
    bookings, total = await ledger.list_bookings(state, page, page_size)
    now = clock()
    return AdminBookingListResponse(
        bookings=[BookingResponse.from_booking(booking, now) for booking in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=BookingStatsResponse)
async def booking_stats(ledger: LedgerStore = Depends(get_ledger)):
    """Booking counts per state and captured, refunded and net amounts in minor units."""
    stats = await ledger.booking_stats()
    return BookingStatsResponse(
        total_bookings=stats.total,
        by_state=stats.by_state,
        captured_amount=stats.captured_amount,
        refunded_amount=stats.refunded_amount,
        net_amount=stats.net_amount,
        needs_review=stats.needs_review,
    )


@router.get("/reconciliation/review", response_model=ReviewQueueResponse)
async def review_queue(
    ledger: LedgerStore = Depends(get_ledger),
    clock: Clock = Depends(get_clock),
):
    """Bookings and webhook events flagged for manual review."""
    bookings = await ledger.list_flagged()
    events = await ledger.list_flagged_webhooks()
    now = clock()
    return ReviewQueueResponse(
        bookings=[BookingResponse.from_booking(booking, now) for booking in bookings],
        webhook_events=[FlaggedWebhookResponse.model_validate(event) for event in events],
    )
