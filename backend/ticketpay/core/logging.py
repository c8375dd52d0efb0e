"""
Structured logging for the booking and payment paths.

structlog renders through the stdlib root handler so uvicorn, SQLAlchemy and
our own events share one stream: JSON in production, console in development.
Every event carries the service name and environment; request and webhook
ids are bound per request by the middleware.

Payment credentials never reach the logs: signatures, gateway secrets and
auth headers are masked before rendering, whatever the call site passes.
"""

import logging
import sys
from typing import Any, MutableMapping

import structlog
from ticketpay.core.config import get_settings

# Keys masked wherever they appear at the top level of an event.
REDACTED_KEYS = frozenset({
    "signature",
    "signature_value",
    "razorpay_signature",
    "x_razorpay_signature",
    "key_secret",
    "webhook_secret",
    "authorization",
})
REDACTED = "[redacted]"

_configured = False


def add_service_context(service: str, environment: str):
    def processor(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in event_dict.keys() & REDACTED_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging() -> None:
    global _configured
    if _configured:
        return

    settings = get_settings()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service_context(settings.APP_NAME, settings.ENVIRONMENT),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.ENVIRONMENT == "production":
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Foreign (stdlib) records get the same timestamps and masking as ours.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # httpx logs every gateway URL at INFO; the adapter logs its own outcomes.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
