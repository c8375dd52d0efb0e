"""
Pydantic schemas for the operator endpoints: booking overview and the manual review queue.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from ticketpay.schemas.booking import BookingResponse


class FlaggedWebhookResponse(BaseModel):
    gateway_event_id: str
    event_type: str
    received_at: datetime
    processed_at: Optional[datetime]
    processing_result: Optional[str]
    attempts: int
    last_error: Optional[str]
    payload_mismatch: bool

    model_config = {"from_attributes": True}


class ReviewQueueResponse(BaseModel):
    bookings: list[BookingResponse]
    webhook_events: list[FlaggedWebhookResponse]


class AdminBookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
    page: int
    page_size: int


class BookingStatsResponse(BaseModel):
    total_bookings: int
    by_state: dict[str, int]
    captured_amount: int
    refunded_amount: int
    net_amount: int
    needs_review: int
