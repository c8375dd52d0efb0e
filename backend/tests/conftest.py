"""
Pytest fixtures: a per-test SQLite database, a stub payment gateway, a
controllable clock, the services wired on top of them and an HTTP client
against the app with its dependencies overridden.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpay.api.dependencies import get_clock
from ticketpay.core.config import Settings, get_settings
from ticketpay.db.base import Base
from ticketpay.db.session import build_engine, build_session_factory, get_session_factory
from ticketpay.main import app
from ticketpay.models.event import Event
from ticketpay.models.user import User
from ticketpay.services.booking_service import BookingService
from ticketpay.services.catalog import Catalog
from ticketpay.services.gateway_factory import get_gateway
from ticketpay.services.idempotency import IdempotencyGuard
from ticketpay.services.ledger import LedgerStore
from ticketpay.services.reconciler import ReconciliationWorker
from ticketpay.services.webhook_service import WebhookProcessor
from tests.helpers import KEY_SECRET, TICKET_PRICE, WEBHOOK_SECRET, FakeClock, StubGateway


@pytest.fixture
def settings() -> Settings:
    return Settings(
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        REDIS_ENABLED=False,
        RECONCILER_ENABLED=False,
        HOLD_DURATION_MINUTES=15,
        IDEMPOTENCY_WAIT_SECONDS=5.0,
        RECONCILE_MAX_ATTEMPTS=3,
        WEBHOOK_REPLAY_GRACE_SECONDS=30,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite file per test; tables created from the models."""
    engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ticketpay.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture
def guard(session_factory, settings, clock) -> IdempotencyGuard:
    return IdempotencyGuard(
        session_factory,
        lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
        wait_seconds=settings.IDEMPOTENCY_WAIT_SECONDS,
        poll_interval=0.01,
        clock=clock,
    )


@pytest.fixture
def booking_service(ledger, guard, gateway, session_factory, settings, clock) -> BookingService:
    return BookingService(ledger, guard, gateway, Catalog(session_factory), settings=settings, clock=clock)


@pytest.fixture
def webhook_processor(ledger, guard, booking_service, settings, clock) -> WebhookProcessor:
    return WebhookProcessor(ledger, guard, booking_service, settings=settings, clock=clock)


@pytest.fixture
def reconciler(ledger, booking_service, webhook_processor, gateway, settings, clock) -> ReconciliationWorker:
    return ReconciliationWorker(
        ledger, booking_service, webhook_processor, gateway, settings=settings, clock=clock
    )


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, settings, clock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database, stub gateway and clock."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    async with session_factory() as session:
        user = User(email="test@example.com", name="Test User")
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def test_event(session_factory) -> Event:
    """A concert with a 500.00 INR ticket price."""
    async with session_factory() as session:
        event = Event(
            title="Test Concert",
            date=datetime(2026, 4, 1, 19, 0, tzinfo=timezone.utc),
            location="Test Venue",
            ticket_price=TICKET_PRICE,
            currency="INR",
        )
        session.add(event)
        await session.commit()
        await session.refresh(event)
        return event


@pytest_asyncio.fixture
async def free_event(session_factory) -> Event:
    async with session_factory() as session:
        event = Event(
            title="Free Meetup",
            date=datetime(2026, 4, 2, 18, 0, tzinfo=timezone.utc),
            location="Community Hall",
            ticket_price=0,
            currency="INR",
        )
        session.add(event)
        await session.commit()
        await session.refresh(event)
        return event


@pytest_asyncio.fixture
async def hold(booking_service, test_user, test_event):
    """A pending two-ticket hold placed at the clock's current time."""
    result = await booking_service.create_hold(test_event.id, test_user.id, 2, "hold-key-1")
    return result.booking
