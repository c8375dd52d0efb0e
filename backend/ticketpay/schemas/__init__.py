from ticketpay.schemas.booking import (
    BookingListResponse,
    BookingResponse,
    HoldCreate,
    RefundRequest,
    RefundResponse,
)
from ticketpay.schemas.payment import (
    GatewayPaymentResponse,
    OrderPaymentsResponse,
    VerifyPaymentRequest,
    WebhookAck,
)
from ticketpay.schemas.review import (
    AdminBookingListResponse,
    BookingStatsResponse,
    FlaggedWebhookResponse,
    ReviewQueueResponse,
)

__all__ = [
    "HoldCreate", "BookingResponse", "BookingListResponse", "RefundRequest", "RefundResponse",
    "VerifyPaymentRequest", "GatewayPaymentResponse", "OrderPaymentsResponse", "WebhookAck",
    "FlaggedWebhookResponse", "ReviewQueueResponse", "AdminBookingListResponse", "BookingStatsResponse",
]
