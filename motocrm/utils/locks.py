"""
Per-subscriber advisory locks on Redis.

Webhook deliveries for one subscriber are serialized so that concurrent
retries do not race into the unique constraints. The constraints stay the
real guard: when Redis is unreachable, processing continues unlocked.
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from motocrm.utils.logging import mask_phone

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "motocrm:lock:subscriber:"
LOCK_TTL_SECONDS = 30
LOCK_WAIT_SECONDS = 5
LOCK_POLL_INTERVAL = 0.1

# Deletes the key only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockTimeoutError(Exception):
    """Another delivery for the same subscriber held the lock for the whole wait."""
    pass


async def _redis():
    from motocrm.utils.redis_client import get_redis
    return await get_redis()


@asynccontextmanager
async def subscriber_lock(
    key: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
) -> AsyncIterator[bool]:
    """
    Hold the advisory lock for one subscriber (id or normalized phone).

        async with subscriber_lock(subscriber_id) as held:
            ...

    Yields True when the lock is held, False when Redis is unreachable and
    the caller runs unlocked. Raises LockTimeoutError when the lock stays
    taken for `wait` seconds.
    """
    lock_key = LOCK_KEY_PREFIX + key
    token = uuid.uuid4().hex

    held = await _try_acquire(lock_key, token, ttl, wait)
    if held is False:
        raise LockTimeoutError(f"Subscriber {mask_phone(key)} still locked after {wait}s")
    try:
        yield bool(held)
    finally:
        if held:
            await _release(lock_key, token)


async def _try_acquire(lock_key: str, token: str, ttl: int, wait: float) -> Optional[bool]:
    """True when acquired, False on timeout, None when Redis is unavailable."""
    try:
        redis = await _redis()
        deadline = time.monotonic() + wait
        while True:
            if await redis.set(lock_key, token, nx=True, ex=ttl):
                return True
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for %s", lock_key)
                return False
            await asyncio.sleep(LOCK_POLL_INTERVAL)
    except Exception as e:
        logger.warning("Subscriber lock unavailable, continuing unlocked: %s", str(e))
        return None


async def _release(lock_key: str, token: str) -> None:
    try:
        redis = await _redis()
        await redis.eval(_RELEASE_SCRIPT, 1, lock_key, token)
    except Exception as e:
        # The TTL frees the key anyway
        logger.warning("Could not release %s: %s", lock_key, str(e))
