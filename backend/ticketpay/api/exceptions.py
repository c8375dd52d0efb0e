"""
Exception handlers that render BookingError as a JSON error envelope.

    {"error": {"code": "INVALID_TRANSITION", "message": "...", "booking_id": "..."}}

The HTTP status comes from the error class. Request validation errors keep
FastAPI's default 422 body.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ticketpay.core.errors import BookingError
from ticketpay.core.logging import get_logger

logger = get_logger(__name__)


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 500 else logger.info
    log("request_rejected", error_code=exc.code, status_code=exc.status_code, booking_id=exc.booking_id)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)  # type: ignore[arg-type]
