"""
Operator alerts for failures nobody would otherwise notice: a webhook that
could not be applied, a sync record that ran out of attempts, an aborted
bulk sync.

Every alert is logged at ERROR (or CRITICAL). When ALERT_WEBHOOK_URL is set
it is also posted to Discord/Slack. Each alert type has a cooldown kept in
Redis, or in process memory while Redis is unreachable.
"""
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300
WEBHOOK_TIMEOUT_SECONDS = 5.0


class AlertType:
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    SYNC_ATTEMPTS_EXHAUSTED = "sync_attempts_exhausted"
    BULK_SYNC_FAILED = "bulk_sync_failed"


COOLDOWN_SECONDS: dict[str, int] = {
    # A platform outage fails every webhook; one alert per quarter hour is enough
    AlertType.WEBHOOK_PROCESSING_FAILED: 900,
}

_SEVERITY_PREFIX = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}

# alert_type -> monotonic expiry, used only while Redis is down
_local_cooldowns: dict[str, float] = {}


def format_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    correlation_id: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    """Discord/Slack-compatible message body."""
    lines = [f"{_SEVERITY_PREFIX.get(severity, 'ℹ️')} **{alert_type}**", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    for key, value in (extra or {}).items():
        lines.append(f"`{key}: {value}`")
    return "\n".join(lines)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """Log and forward an alert unless the same type fired within its cooldown."""
    if not await _claim_cooldown(alert_type):
        logger.debug("Alert %s suppressed by cooldown", alert_type)
        return

    from motocrm.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    logger.log(level, "ALERT [%s]: %s", alert_type, message, extra={"error_code": alert_type})

    from motocrm.config import get_settings
    webhook_url = get_settings().alert_webhook_url
    if webhook_url:
        await _post_to_webhook(webhook_url, format_alert(alert_type, message, severity, cid, extra))


async def _claim_cooldown(alert_type: str) -> bool:
    """SET NX EX makes check-and-record atomic across instances."""
    cooldown = COOLDOWN_SECONDS.get(alert_type, DEFAULT_COOLDOWN_SECONDS)
    try:
        from motocrm.utils.redis_client import get_redis
        redis = await get_redis()
        return bool(await redis.set(f"motocrm:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown))
    except Exception as e:
        logger.debug("Alert cooldown falling back to memory: %s", str(e))

    now = time.monotonic()
    if now < _local_cooldowns.get(alert_type, 0):
        return False
    _local_cooldowns[alert_type] = now + cooldown
    return True


async def _post_to_webhook(url: str, content: str) -> None:
    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json={"content": content})
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Alert webhook delivery failed: %s", str(e))
