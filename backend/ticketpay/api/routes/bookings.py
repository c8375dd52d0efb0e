"""
Booking endpoints: holds, lookups, cancellation and refunds.
"""

from fastapi import APIRouter, Depends, Query, Response, status

from ticketpay.api.dependencies import get_booking_service, get_clock
from ticketpay.core.clock import Clock
from ticketpay.schemas.booking import BookingListResponse, BookingResponse, HoldCreate, RefundRequest
from ticketpay.services.booking_service import BookingService

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/holds", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_hold(
    hold: HoldCreate,
    response: Response,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    """
    Hold tickets for an event and open a gateway order for the payment.

    Safe to retry with the same idempotency_key: the original booking is
    returned with 200 and no second gateway order is created.
    """
    result = await service.create_hold(hold.event_id, hold.user_id, hold.ticket_count, hold.idempotency_key)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return BookingResponse.from_booking(result.booking, clock())


@router.get("", response_model=BookingListResponse)
async def list_user_bookings(
    user_id: int = Query(...),
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    """All bookings of a user, newest first."""
    bookings = await service.list_user_bookings(user_id)
    now = clock()
    return BookingListResponse(
        bookings=[BookingResponse.from_booking(booking, now) for booking in bookings],
        total=len(bookings),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    booking = await service.get_booking(booking_id)
    return BookingResponse.from_booking(booking, clock())


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    """Cancel an unpaid hold. Confirmed bookings must be refunded instead."""
    booking = await service.cancel(booking_id)
    return BookingResponse.from_booking(booking, clock())


@router.post("/{booking_id}/refund", response_model=BookingResponse)
async def refund_booking(
    booking_id: str,
    refund: RefundRequest,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    """Refund a confirmed booking in full, or partially when `amount` is given."""
    booking = await service.refund(booking_id, amount=refund.amount, reason=refund.reason)
    return BookingResponse.from_booking(booking, clock())
