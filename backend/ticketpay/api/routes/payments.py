"""
Payment endpoints: checkout verification, order lookups and the gateway webhook.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from ticketpay.api.dependencies import get_booking_service, get_clock, get_webhook_processor
from ticketpay.core.clock import Clock
from ticketpay.schemas.booking import BookingResponse
from ticketpay.schemas.payment import (
    GatewayPaymentResponse,
    OrderPaymentsResponse,
    VerifyPaymentRequest,
    WebhookAck,
)
from ticketpay.services.booking_service import BookingService
from ticketpay.services.webhook_service import WebhookProcessor

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/verify", response_model=BookingResponse)
async def verify_payment(
    payload: VerifyPaymentRequest,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
):
    """
    Confirm a booking from the checkout callback.

    The signature is HMAC-SHA256 of "<order_id>|<payment_id>" keyed with the
    API key secret. Payments arriving after the hold expired are rejected.
    """
    booking = await service.verify_payment(
        payload.booking_id,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )
    return BookingResponse.from_booking(booking, clock())


@router.get("/order/{order_id}", response_model=OrderPaymentsResponse)
async def get_order_payments(
    order_id: str,
    service: BookingService = Depends(get_booking_service),
):
    """Payments the gateway reports for one of our orders."""
    payments = await service.fetch_order_payments(order_id)
    return OrderPaymentsResponse(
        order_id=order_id,
        payments=[GatewayPaymentResponse.model_validate(payment) for payment in payments],
    )


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Gateway webhook. The signature covers the raw body, so it is read before any parsing.

    Acknowledged once the event is recorded; processing runs after the response
    and is retried by the reconciliation worker if it does not complete.
    """
    raw_body = await request.body()
    result = await processor.ingest(raw_body, x_razorpay_signature, x_razorpay_event_id)
    if not result.duplicate:
        background_tasks.add_task(processor.process, result.event.gateway_event_id)
    return WebhookAck(event_id=result.event.gateway_event_id, duplicate=result.duplicate)
