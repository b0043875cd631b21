import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Shared async Redis client (created once at import time, reused across requests)
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


# ─── Sync consumer lock ────────────────────────────────────────────────────────

_SYNC_LOCK_KEY = "idex_sync:consumer"


async def _keep_lock_alive(lock, ttl_seconds: int) -> None:
    while True:
        await asyncio.sleep(ttl_seconds / 3)
        try:
            await lock.reacquire()
        except Exception as exc:
            logger.error("Lost sync consumer lock: %s", exc)
            return


@asynccontextmanager
async def sync_consumer_lock(ttl_seconds: int) -> AsyncIterator[bool]:
    """Hold the single-consumer lock for the sync queue.

    Yields True if this process owns the queue, False if another consumer is
    already draining it. The TTL is renewed in the background while held, so
    a crashed worker frees the queue within ``ttl_seconds``. Uses its own
    client because Celery tasks run each pass in a fresh event loop.
    """
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    lock = client.lock(_SYNC_LOCK_KEY, timeout=ttl_seconds, blocking=False)
    acquired = False
    renew: asyncio.Task | None = None
    try:
        acquired = await lock.acquire()
        if acquired:
            renew = asyncio.create_task(_keep_lock_alive(lock, ttl_seconds))
        yield acquired
    finally:
        if renew is not None:
            renew.cancel()
        if acquired:
            try:
                await lock.release()
            except Exception as exc:
                # Lock expired under us; the TTL already freed it
                logger.warning("Failed to release sync consumer lock: %s", exc)
        await client.aclose()
