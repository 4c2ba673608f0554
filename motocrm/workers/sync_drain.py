"""
Sync drain worker - retries pending/failed outbound sync records.
Runs every SYNC_DRAIN_INTERVAL_SECONDS; skips the drain when the queue is empty.
Purges old succeeded records once per PURGE_INTERVAL_SECONDS.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone

from motocrm.services.sync_queue import OutboundSyncQueue

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 6 * 3600
HEARTBEAT_KEY = "motocrm:worker_health:sync_drain"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from motocrm.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def drain_once(queue: OutboundSyncQueue) -> int:
    """One drain cycle. Returns records processed (0 when nothing was due)."""
    stats = await queue.get_stats()
    if stats["pending"] + stats["failed"] == 0:
        return 0
    result = await queue.drain_pending()
    if result.failed:
        logger.warning(
            "Sync drain finished with %d failures (%d succeeded)", result.failed, result.succeeded
        )
    return result.processed


async def run_sync_drain_worker(
    queue: OutboundSyncQueue,
    interval_seconds: float = 60,
    retention_days: int = 30,
):
    """Main drain loop. Runs until cancelled."""
    logger.info("Sync drain worker started")
    last_purge = None

    while True:
        try:
            processed = await drain_once(queue)
            if processed > 0:
                logger.info("Sync drain worker processed %d records", processed)

            due = last_purge is None or time.monotonic() - last_purge >= PURGE_INTERVAL_SECONDS
            if retention_days > 0 and due:
                await queue.purge_succeeded(retention_days)
                last_purge = time.monotonic()
        except Exception as e:
            logger.error("Sync drain worker error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval_seconds)
