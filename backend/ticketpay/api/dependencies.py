"""
FastAPI dependencies wiring the services to one session factory.

Services are cheap to construct and hold no per-request state, so they are
built per request from the factory. Tests override get_session_factory,
get_gateway and get_clock.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpay.core.clock import Clock, utcnow
from ticketpay.core.config import Settings, get_settings
from ticketpay.db.session import get_session_factory
from ticketpay.services.booking_service import BookingService
from ticketpay.services.catalog import Catalog
from ticketpay.services.gateway_factory import get_gateway
from ticketpay.services.idempotency import IdempotencyGuard
from ticketpay.services.interfaces.gateway import PaymentGateway
from ticketpay.services.ledger import LedgerStore
from ticketpay.services.webhook_service import WebhookProcessor


def get_clock() -> Clock:
    return utcnow


def get_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> LedgerStore:
    return LedgerStore(session_factory)


def get_guard(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> IdempotencyGuard:
    return IdempotencyGuard(
        session_factory,
        lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
        wait_seconds=settings.IDEMPOTENCY_WAIT_SECONDS,
        clock=clock,
    )


def get_catalog(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Catalog:
    return Catalog(session_factory)


def get_booking_service(
    ledger: LedgerStore = Depends(get_ledger),
    guard: IdempotencyGuard = Depends(get_guard),
    gateway: PaymentGateway = Depends(get_gateway),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> BookingService:
    return BookingService(ledger, guard, gateway, catalog, settings=settings, clock=clock)


def get_webhook_processor(
    ledger: LedgerStore = Depends(get_ledger),
    guard: IdempotencyGuard = Depends(get_guard),
    bookings: BookingService = Depends(get_booking_service),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> WebhookProcessor:
    return WebhookProcessor(ledger, guard, bookings, settings=settings, clock=clock)
