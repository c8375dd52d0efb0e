"""
Pydantic schemas for payment verification and gateway callbacks.
"""

from pydantic import BaseModel, Field


class VerifyPaymentRequest(BaseModel):
    booking_id: str
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class GatewayPaymentResponse(BaseModel):
    payment_id: str
    order_id: str
    amount: int
    currency: str
    status: str

    model_config = {"from_attributes": True}


class OrderPaymentsResponse(BaseModel):
    order_id: str
    payments: list[GatewayPaymentResponse]


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    duplicate: bool
