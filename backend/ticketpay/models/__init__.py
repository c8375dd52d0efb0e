from ticketpay.models.user import User
from ticketpay.models.event import Event
from ticketpay.models.booking import Booking, BookingState
from ticketpay.models.transition import BookingTransition
from ticketpay.models.refund import Refund
from ticketpay.models.webhook_event import WebhookEvent
from ticketpay.models.idempotency import IdempotencyRecord

__all__ = [
    "User", "Event", "Booking", "BookingState", "BookingTransition",
    "Refund", "WebhookEvent", "IdempotencyRecord",
]
