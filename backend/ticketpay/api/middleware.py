"""
Request correlation and access logging.

Every request gets a request id (the caller's X-Request-ID when it is a
plausible token, otherwise a fresh one) bound into structlog's contextvars,
so service, ledger and gateway events logged while handling it carry the
same id. Gateway webhooks additionally bind the gateway's event id, which is
what support looks up when Razorpay reports a delivery.
"""

import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog

from ticketpay.core.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
WEBHOOK_EVENT_HEADER = "X-Razorpay-Event-Id"

# Caller-supplied ids end up in every log line; anything else is replaced.
_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:-]{1,64}")

# Polled by orchestrators and scrapers; logged at debug.
QUIET_PATHS = frozenset({"/health", "/metrics"})


def resolve_request_id(header_value: Optional[str]) -> str:
    if header_value and _REQUEST_ID_PATTERN.fullmatch(header_value):
        return header_value
    return uuid.uuid4().hex[:16]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        gateway_event_id = request.headers.get(WEBHOOK_EVENT_HEADER)
        if gateway_event_id:
            context["gateway_event_id"] = gateway_event_id[:64]

        start_time = time.perf_counter()
        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_failed",
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                raise

            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            elif request.url.path in QUIET_PATHS:
                log = logger.debug
            else:
                log = logger.info
            log("request_completed", status_code=response.status_code, duration_ms=duration_ms)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms}ms"
        return response
