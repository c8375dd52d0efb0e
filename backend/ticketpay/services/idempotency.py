"""
Idempotency guard for "create or reuse" operations.

Callers claim (scope, key) before performing a side effect such as creating a
gateway order. The claim is a row insert, so the database's primary key
decides the single winner among concurrent callers:

    claim = await guard.acquire("hold", key, fingerprint)
    if not claim.is_new:
        result_id = claim.result_id or await guard.wait_for_result("hold", key)
        ...reuse result_id...
    try:
        ...side effect...
    except Exception:
        await guard.release(claim)
        raise
    await guard.complete(claim, result_id)

A winner that crashes leaves an unfinished claim behind. Its lease
(`locked_until`) lets exactly one later caller take it over.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpay.core.clock import Clock, ensure_utc, utcnow
from ticketpay.core.errors import RequestInProgress
from ticketpay.core.logging import get_logger
from ticketpay.models.idempotency import IdempotencyRecord

logger = get_logger(__name__)

HOLD_SCOPE = "hold"
WEBHOOK_SCOPE = "webhook"
REFUND_SCOPE = "refund"

MAX_ACQUIRE_ATTEMPTS = 3


@dataclass
class Claim:
    scope: str
    key: str
    is_new: bool
    owner: Optional[str] = None
    result_id: Optional[str] = None
    fingerprint: Optional[str] = None


class IdempotencyGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lease_seconds: float = 60,
        wait_seconds: float = 10.0,
        poll_interval: float = 0.05,
        clock: Clock = utcnow,
    ):
        self._sessions = session_factory
        self._lease = timedelta(seconds=lease_seconds)
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval
        self._clock = clock

    async def acquire(self, scope: str, key: str, fingerprint: Optional[str] = None) -> Claim:
        """
        Claim (scope, key). `is_new` is True for exactly one caller; everyone
        else gets the recorded result (or None while the winner is still working).
        """
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            now = self._clock()
            owner = str(uuid.uuid4())

            async with self._sessions() as session:
                session.add(
                    IdempotencyRecord(
                        scope=scope,
                        key=key,
                        fingerprint=fingerprint,
                        owner=owner,
                        locked_until=now + self._lease,
                        created_at=now,
                    )
                )
                try:
                    await session.commit()
                    return Claim(scope, key, is_new=True, owner=owner, fingerprint=fingerprint)
                except IntegrityError:
                    await session.rollback()

            existing = await self._load(scope, key)
            if existing is None:
                # The previous owner released between our insert and read; try again.
                continue

            if existing.result_id is None and ensure_utc(existing.locked_until) < now:
                if await self._take_over(existing, owner, now):
                    logger.warning("idempotency_claim_taken_over", scope=scope, key=key, previous_owner=existing.owner)
                    return Claim(scope, key, is_new=True, owner=owner, fingerprint=existing.fingerprint)
                continue

            return Claim(
                scope,
                key,
                is_new=False,
                result_id=existing.result_id,
                fingerprint=existing.fingerprint,
            )

        raise RequestInProgress()

    async def complete(self, claim: Claim, result_id: str) -> bool:
        """Record the outcome of a claimed operation. False if the claim was lost to a takeover."""
        async with self._sessions() as session:
            async with session.begin():
                outcome = await session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.scope == claim.scope,
                        IdempotencyRecord.key == claim.key,
                        IdempotencyRecord.owner == claim.owner,
                    )
                    .values(result_id=result_id, completed_at=self._clock())
                )
        if outcome.rowcount == 0:
            logger.warning("idempotency_claim_lost", scope=claim.scope, key=claim.key, result_id=result_id)
            return False
        claim.result_id = result_id
        return True

    async def release(self, claim: Claim) -> None:
        """Drop an unfinished claim so the caller's retry can start over."""
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.scope == claim.scope,
                        IdempotencyRecord.key == claim.key,
                        IdempotencyRecord.owner == claim.owner,
                        IdempotencyRecord.result_id.is_(None),
                    )
                )

    async def wait_for_result(self, scope: str, key: str) -> str:
        """Poll until the claim's winner records a result. Raises RequestInProgress on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_seconds
        delay = self._poll_interval

        while True:
            record = await self._load(scope, key)
            if record is None:
                # Winner failed and released; the client should retry.
                raise RequestInProgress()
            if record.result_id is not None:
                return record.result_id
            if loop.time() >= deadline:
                raise RequestInProgress()
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

    async def _load(self, scope: str, key: str) -> Optional[IdempotencyRecord]:
        async with self._sessions() as session:
            result = await session.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.scope == scope,
                    IdempotencyRecord.key == key,
                )
            )
            return result.scalar_one_or_none()

    async def _take_over(self, existing: IdempotencyRecord, owner: str, now) -> bool:
        async with self._sessions() as session:
            async with session.begin():
                outcome = await session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.scope == existing.scope,
                        IdempotencyRecord.key == existing.key,
                        IdempotencyRecord.owner == existing.owner,
                        IdempotencyRecord.result_id.is_(None),
                    )
                    .values(owner=owner, locked_until=now + self._lease)
                )
        return outcome.rowcount == 1
