"""
Error taxonomy for the booking/payment core.

Every error carries a stable machine-readable code and, where one is known,
the booking id. The API layer renders them as:

    {"error": {"code": "INVALID_TRANSITION", "message": "...", "booking_id": "..."}}

Raw gateway error text is never placed in `message`; it goes to the logs.

Recovery rules:
  - DuplicateKey and VersionConflict are internal. DuplicateKey is resolved by
    loading the existing record, VersionConflict by reread-and-retry.
  - InvalidTransition and InvalidSignature are never retried automatically.
  - TransientError subclasses are safe to retry later (the reconciliation
    worker does so for webhook events and expiring holds).
"""

from typing import Optional

from starlette import status


class BookingError(Exception):
    code: str = "BOOKING_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Booking request failed"

    def __init__(self, message: Optional[str] = None, *, booking_id: Optional[str] = None):
        self.message = message or self.default_message
        self.booking_id = booking_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "booking_id": self.booking_id,
        }


class InvalidArgument(BookingError):
    code = "INVALID_ARGUMENT"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request parameters"


class NotFound(BookingError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class DuplicateKey(BookingError):
    code = "DUPLICATE_KEY"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Record already exists"


class VersionConflict(BookingError):
    code = "VERSION_CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Booking was modified concurrently"


class InvalidTransition(BookingError):
    code = "INVALID_TRANSITION"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Booking cannot move to the requested state"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        booking_id: Optional[str] = None,
        current_state: Optional[str] = None,
        trigger: Optional[str] = None,
    ):
        self.current_state = current_state
        self.trigger = trigger
        if message is None and current_state and trigger:
            message = f"Cannot apply '{trigger}' to a booking in state '{current_state}'"
        super().__init__(message, booking_id=booking_id)


class InvalidSignature(BookingError):
    code = "INVALID_SIGNATURE"
    status_code = status.HTTP_400_BAD_REQUEST
    # Deliberately identical for tampering and malformed input.
    default_message = "Request could not be verified"

    def __init__(self, *, booking_id: Optional[str] = None):
        super().__init__(self.default_message, booking_id=booking_id)


class RequestInProgress(BookingError):
    code = "REQUEST_IN_PROGRESS"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A request with this idempotency key is still being processed"


class GatewayRejected(BookingError):
    code = "GATEWAY_REJECTED"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment provider rejected the request"


class TransientError(BookingError):
    code = "TEMPORARILY_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable, please retry"


class GatewayUnavailable(TransientError):
    code = "GATEWAY_UNAVAILABLE"
    default_message = "Payment provider is unavailable, please retry"


class RetryExhausted(TransientError):
    code = "RETRY_EXHAUSTED"
    default_message = "Booking is under heavy contention, please retry"
