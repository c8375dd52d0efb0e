"""
Async engine and session factory.

Each ledger operation opens its own short-lived session from the factory and
commits before returning, so no transaction is ever held open across a
payment-gateway call.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ticketpay.core.config import get_settings

settings = get_settings()


def build_engine(database_url: str, **overrides) -> AsyncEngine:
    url = make_url(database_url)
    options = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.drivername.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    options.update(overrides)
    return create_async_engine(database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency; tests override it with a factory bound to a test database."""
    return SessionLocal
