"""
Ticketpay Booking API - Main Application Entry Point

Ticket holds paid through Razorpay:
- Version-gated state transitions for every booking
- Idempotent hold creation and at-least-once webhook ingestion
- Background reconciliation of expired holds and unprocessed webhooks
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketpay.core.config import get_settings
from ticketpay.core.logging import setup_logging, get_logger
from ticketpay.core.metrics import metrics_endpoint
from ticketpay.api.router import api_router
from ticketpay.api.middleware import RequestLoggingMiddleware
from ticketpay.api.exceptions import register_exception_handlers
from ticketpay.db.session import SessionLocal, engine
from ticketpay.infrastructure.redis_client import RedisSweepLock, close_redis, get_redis
from ticketpay.services.booking_service import BookingService
from ticketpay.services.catalog import Catalog
from ticketpay.services.gateway_factory import close_gateway, get_gateway
from ticketpay.services.idempotency import IdempotencyGuard
from ticketpay.services.ledger import LedgerStore
from ticketpay.services.reconciler import ReconciliationWorker
from ticketpay.services.webhook_service import WebhookProcessor

settings = get_settings()


def build_reconciler(redis_client) -> ReconciliationWorker:
    ledger = LedgerStore(SessionLocal)
    guard = IdempotencyGuard(
        SessionLocal,
        lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
        wait_seconds=settings.IDEMPOTENCY_WAIT_SECONDS,
    )
    gateway = get_gateway()
    bookings = BookingService(ledger, guard, gateway, Catalog(SessionLocal), settings=settings)
    webhooks = WebhookProcessor(ledger, guard, bookings, settings=settings)
    lock = RedisSweepLock(redis_client, ttl_seconds=settings.RECONCILE_LOCK_TTL_SECONDS)
    return ReconciliationWorker(ledger, bookings, webhooks, gateway, settings=settings, lock=lock)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    # Redis only guards the sweep; without it each process sweeps on its own
    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Sweep lock disabled")

    reconciler = None
    if settings.RECONCILER_ENABLED:
        reconciler = build_reconciler(redis_client)
        reconciler.start()
    app.state.reconciler = reconciler

    yield

    # Cleanup
    if reconciler is not None:
        await reconciler.stop()
    await close_gateway()
    await close_redis()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Ticket booking API with gateway payments and reconciliation",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

# Routes
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    reconciler = getattr(app.state, "reconciler", None)
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "reconciler": "running" if reconciler is not None and reconciler.is_running else "stopped",
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
