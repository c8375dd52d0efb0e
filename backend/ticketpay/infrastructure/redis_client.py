"""
Redis client and the cluster-wide sweep lock.

Redis is advisory only. The reconciliation sweep is already safe to run twice
(every transition is a version-gated CAS), so the lock just avoids duplicate
gateway lookups when several API processes run the worker.

Circuit Breaker Pattern:
  On Redis failure the lock "fails open" and the sweep runs anyway, guarded
  only by the in-process overlap check.
"""

import uuid
from typing import Optional

import redis.asyncio as redis

from ticketpay.core.config import get_settings
from ticketpay.core.logging import get_logger
from ticketpay.core.metrics import redis_connection_errors

logger = get_logger(__name__)

_redis_client: Optional[redis.Redis] = None

# Delete the key only if we still own it.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled or unreachable."""
    global _redis_client
    settings = get_settings()

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        try:
            await client.ping()
        except (redis.RedisError, OSError) as e:
            redis_connection_errors.inc()
            logger.error("redis_connection_failed", error=str(e))
            await client.aclose()
            return None
        _redis_client = client
        logger.info("redis_connected", url=settings.REDIS_URL)

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class RedisSweepLock:
    """
    `SET key token NX PX ttl` lock around one reconciliation sweep.

    acquire() returns True when this process may sweep: it holds the lock,
    or Redis is unavailable (fail open). False means another process holds it.
    """

    def __init__(self, client: Optional[redis.Redis], key: str = "ticketpay:reconcile:lock", ttl_seconds: int = 300):
        self._client = client
        self._key = key
        self._ttl_ms = int(ttl_seconds * 1000)
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        if self._client is None:
            return True

        token = str(uuid.uuid4())
        try:
            acquired = await self._client.set(self._key, token, nx=True, px=self._ttl_ms)
        except (redis.RedisError, OSError) as e:
            redis_connection_errors.inc()
            logger.warning("sweep_lock_unavailable", key=self._key, error=str(e))
            return True

        if not acquired:
            return False
        self._token = token
        return True

    async def release(self) -> None:
        if self._client is None or self._token is None:
            return

        token, self._token = self._token, None
        try:
            await self._client.eval(RELEASE_SCRIPT, 1, self._key, token)
        except (redis.RedisError, OSError) as e:
            # The TTL frees the lock on its own.
            redis_connection_errors.inc()
            logger.warning("sweep_lock_release_failed", key=self._key, error=str(e))
