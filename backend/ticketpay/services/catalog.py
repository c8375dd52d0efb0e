"""
Read-only lookups of externally owned events and users.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpay.core.errors import NotFound
from ticketpay.models.event import Event
from ticketpay.models.user import User


class Catalog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get_event(self, event_id: int) -> Event:
        async with self._sessions() as session:
            result = await session.execute(select(Event).where(Event.id == event_id))
            event = result.scalar_one_or_none()

        if not event:
            raise NotFound(f"Event {event_id} not found")
        return event

    async def get_user(self, user_id: int) -> User:
        async with self._sessions() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()

        if not user or not user.is_active:
            raise NotFound(f"User {user_id} not found")
        return user
