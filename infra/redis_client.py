"""
Redis client and distributed lock helpers.

Purpose:
- Provide a lazily created async Redis connection
- Mutex lock so only one worker instance runs the expiration sweep at a time

Usage:
- lock = await acquire_lock("payment_expiration", ttl_sec=600)
- ... do work ...
- await release_lock(lock)

Production notes:
- Lock TTL must exceed the sweep time budget, otherwise a slow run can
  overlap with the next one (harmless, the sweep is idempotent)
- Connection failures raise redis.exceptions.RedisError; callers decide
  whether to degrade
"""
import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)

redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    """Lazily create and return the shared Redis client."""
    global redis_client
    if redis_client is None:
        logger.info("Creating Redis client for %s", settings.REDIS_URL)
        redis_client = redis.Redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    return redis_client


async def acquire_lock(name: str, ttl_sec: int, client: Optional[redis.Redis] = None) -> Optional[Lock]:
    """
    Try to take lock:<name> without blocking.

    Returns the lock if acquired, None if another holder has it.
    Raises RedisError if Redis cannot be reached.
    """
    client = client or get_redis()
    lock = client.lock(f"lock:{name}", timeout=ttl_sec)
    if await lock.acquire(blocking=False):
        logger.debug("Acquired lock:%s (ttl=%ss)", name, ttl_sec)
        return lock
    return None


async def release_lock(lock: Optional[Lock]) -> None:
    """Release a previously acquired lock. Does nothing for None or a lock we no longer own."""
    if lock is None:
        return
    try:
        if await lock.owned():
            await lock.release()
    except RedisError as e:
        # the lock expires on its own after ttl
        logger.warning("Failed to release %s: %s", lock.name, e)


async def close() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
