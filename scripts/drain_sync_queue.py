"""
Drain the outbound sync queue once and print queue stats.

Usage:
    python scripts/drain_sync_queue.py
    python scripts/drain_sync_queue.py --stats-only
    python scripts/drain_sync_queue.py --purge-days 30
"""
import argparse
import asyncio
import logging

from motocrm.config import get_settings
from motocrm.database import dispose_engine
from motocrm.services.container import build_services
from motocrm.utils.logging import configure_structured_logging

logger = logging.getLogger(__name__)


async def main():
    parser = argparse.ArgumentParser(description="Drain pending/failed outbound syncs")
    parser.add_argument("--stats-only", action="store_true", help="Only print queue stats")
    parser.add_argument("--purge-days", type=int, default=0, help="Also purge succeeded records older than N days")
    args = parser.parse_args()

    settings = get_settings()
    configure_structured_logging(settings.log_level)
    services = build_services(settings)

    try:
        stats = await services.sync_queue.get_stats()
        logger.info("Queue stats before: %s", stats)
        if args.stats_only:
            return

        if stats["pending"] + stats["failed"] == 0:
            logger.info("Nothing to drain")
        else:
            result = await services.sync_queue.drain_pending()
            logger.info(
                "Drained: processed=%d succeeded=%d failed=%d",
                result.processed, result.succeeded, result.failed,
            )
            for error in result.errors:
                logger.warning("Failed record %s (lead %s): %s", error["record_id"], error["lead_id"], error["error"])

        if args.purge_days > 0:
            purged = await services.sync_queue.purge_succeeded(args.purge_days)
            logger.info("Purged %d succeeded records", purged)

        logger.info("Queue stats after: %s", await services.sync_queue.get_stats())
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
