"""
Liveness and readiness checks.

GET /health        process is up
GET /health/ready  database and Redis reachable, plus the drain worker's last heartbeat
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from motocrm import __version__
from motocrm.api.deps import get_db
from motocrm.workers.sync_drain import HEARTBEAT_KEY

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now(), "version": __version__}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Webhooks still process without Redis (locks and cooldowns degrade), so a
    Redis failure reports "degraded" rather than taking the instance out.
    """
    database_ok = await _database_reachable(db)
    redis_ok, heartbeat = await _redis_heartbeat()
    checks = {"database": database_ok, "redis": redis_ok}
    return {
        "status": "ready" if database_ok and redis_ok else "degraded",
        "checks": checks,
        "sync_drain_heartbeat": heartbeat,
        "timestamp": _now(),
    }


async def _database_reachable(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False


async def _redis_heartbeat() -> tuple[bool, Optional[str]]:
    """(reachable, last drain heartbeat). The heartbeat is None when it expired."""
    try:
        from motocrm.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return True, await redis.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.warning("Readiness: Redis unreachable: %s", str(e))
        return False, None
