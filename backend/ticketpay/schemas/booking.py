"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from ticketpay.core.clock import ensure_utc
from ticketpay.models.booking import Booking


class HoldCreate(BaseModel):
    event_id: int
    user_id: int
    # Range checks live in the service so they surface as INVALID_ARGUMENT.
    ticket_count: int
    idempotency_key: str = Field(..., max_length=128)


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, description="Minor currency units; omit for a full refund")
    reason: Optional[str] = Field(None, max_length=255)


class RefundResponse(BaseModel):
    gateway_refund_id: str
    amount: int
    status: str
    reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: str
    event_id: int
    user_id: int
    ticket_count: int
    amount: int
    currency: str
    state: str
    effective_state: str
    gateway_order_id: str
    gateway_payment_id: Optional[str]
    refunded_amount: Optional[int]
    hold_expires_at: datetime
    version: int
    needs_review: bool
    created_at: datetime
    updated_at: datetime
    refunds: list[RefundResponse] = []

    @classmethod
    def from_booking(cls, booking: Booking, now: datetime) -> "BookingResponse":
        return cls(
            id=booking.id,
            event_id=booking.event_id,
            user_id=booking.user_id,
            ticket_count=booking.ticket_count,
            amount=booking.amount,
            currency=booking.currency,
            state=booking.state,
            effective_state=booking.effective_state(now).value,
            gateway_order_id=booking.gateway_order_id,
            gateway_payment_id=booking.gateway_payment_id,
            refunded_amount=booking.refunded_amount,
            hold_expires_at=ensure_utc(booking.hold_expires_at),
            version=booking.version,
            needs_review=booking.needs_review,
            created_at=ensure_utc(booking.created_at),
            updated_at=ensure_utc(booking.updated_at),
            refunds=[RefundResponse.model_validate(refund) for refund in booking.refunds],
        )


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
