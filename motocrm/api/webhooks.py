"""
Chat-platform webhook endpoints.

POST /webhooks/{platform}
    1. Parse + normalize (missing event type -> 400, nothing stored)
    2. Audit trail (webhook_events table)
    3. Event processing
    4. Acknowledge with HTTP 200, even when processing failed: any non-2xx
       makes the platform redeliver indefinitely.

GET /webhooks/{platform}
    hub.mode / hub.verify_token / hub.challenge verification handshake.
"""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from motocrm.api.deps import get_services
from motocrm.models.webhook_event import WebhookEvent, WebhookStatus
from motocrm.schemas.api_responses import WebhookAck
from motocrm.services.container import Services
from motocrm.services.event_processor import ProcessResult
from motocrm.services.webhook_normalizer import WebhookValidationError, normalize_webhook
from motocrm.utils.alerting import AlertType, send_alert
from motocrm.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def compute_payload_hash(payload: dict) -> str:
    """Stable sha256 of a JSON payload, used to spot redeliveries in the audit trail."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def _record_webhook_event(
    services: Services,
    platform: str,
    event_type: str,
    raw_payload: dict,
) -> Optional[uuid.UUID]:
    """Record the webhook in the audit trail. Store failures never block the ack."""
    try:
        async with services.session_factory() as session:
            event = WebhookEvent(
                platform=platform,
                event_type=event_type[:50],
                payload_hash=compute_payload_hash(raw_payload),
                raw_payload=raw_payload,
                processing_status=WebhookStatus.RECEIVED,
                correlation_id=get_correlation_id(),
            )
            session.add(event)
            await session.commit()
            return event.id
    except Exception as e:
        logger.error("Failed to record webhook event: %s", str(e), extra={"platform": platform})
        return None


async def _complete_webhook_event(
    services: Services,
    event_id: Optional[uuid.UUID],
    result: ProcessResult,
) -> None:
    if event_id is None:
        return
    try:
        async with services.session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None:
                return
            event.processing_status = WebhookStatus.COMPLETED if result.success else WebhookStatus.FAILED
            event.error_message = result.error
            event.processed_at = datetime.now(timezone.utc)
            await session.commit()
    except Exception as e:
        logger.error("Failed to complete webhook event %s: %s", event_id, str(e))


@router.post("/{platform}")
async def receive_webhook(
    platform: str,
    request: Request,
    services: Services = Depends(get_services),
):
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    try:
        event = normalize_webhook(raw)
    except WebhookValidationError as e:
        logger.warning("Rejected webhook: %s", str(e), extra={"platform": platform})
        return JSONResponse(status_code=400, content={"error": str(e)})

    logger.info(
        "Webhook received: %s", event.event_type,
        extra={"platform": platform, "event_type": event.event_type, "subscriber_id": event.subscriber_id},
    )

    audit_id = await _record_webhook_event(services, platform, event.event_type, raw)
    result = await services.processor.process_event(event)
    await _complete_webhook_event(services, audit_id, result)
    if not result.success:
        await send_alert(
            AlertType.WEBHOOK_PROCESSING_FAILED,
            f"{platform} {event.event_type} webhook not applied: {result.error}",
            extra={"subscriber_id": event.subscriber_id},
        )

    ack = WebhookAck(
        success=result.success,
        processed=result.processed,
        lead_id=result.lead_id,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        duplicate=True if result.duplicate else None,
        error=result.error,
    )
    return JSONResponse(status_code=200, content=ack.model_dump(by_alias=True, exclude_none=True))


@router.get("/{platform}")
async def verify_webhook(
    platform: str,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    services: Services = Depends(get_services),
):
    """Echo hub.challenge when the verify token matches, 403 otherwise."""
    expected = services.settings.manychat_webhook_verify_token
    token_ok = bool(expected) and hmac.compare_digest(
        (hub_verify_token or "").encode("utf-8"), expected.encode("utf-8")
    )
    if hub_mode == "subscribe" and token_ok:
        logger.info("Webhook verified", extra={"platform": platform})
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification failed", extra={"platform": platform})
    return JSONResponse(status_code=403, content={"error": "Invalid verification"})
