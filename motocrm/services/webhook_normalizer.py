"""
Webhook normalizer - turns heterogeneous chat-platform payloads into a CanonicalEvent.

Every optional field has a fallback chain. Only a missing event type is a
hard failure; malformed optional fields degrade to None.
"""
import logging
import uuid
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from motocrm.schemas.webhook_payloads import (
    CanonicalCustomField,
    CanonicalEvent,
    CanonicalMessage,
    CanonicalTag,
    SubscriberPayload,
)

logger = logging.getLogger(__name__)

# Top-level fields interpreted here; everything else goes to CanonicalEvent.extra
_KNOWN_FIELDS = frozenset({
    "event_type", "type", "subscriber_id", "subscriber",
    "message", "tag", "custom_field", "timestamp",
})

# Epoch values above this are milliseconds (year 2286 in seconds)
_EPOCH_MS_THRESHOLD = 10_000_000_000


class WebhookValidationError(ValueError):
    """The webhook payload is missing a required field."""
    pass


def _first(data: Mapping, *keys: str) -> Any:
    """First present, non-empty value among keys."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _coalesce(*values: Any) -> Any:
    """First value that is not None; 0 and False count as present."""
    for value in values:
        if value is not None:
            return value
    return None


def _as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse epoch seconds, epoch milliseconds or ISO-8601 into an aware UTC datetime.
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > _EPOCH_MS_THRESHOLD:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def synthetic_message_id() -> str:
    return f"synthetic_{time.time_ns()}_{uuid.uuid4().hex[:8]}"


def _normalize_message(raw: Any, now: datetime) -> Optional[CanonicalMessage]:
    if not isinstance(raw, Mapping):
        return None

    platform_msg_id = _as_str(_first(raw, "platform_msg_id", "id", "message_id", "mid"))
    synthetic = platform_msg_id is None
    if synthetic:
        platform_msg_id = synthetic_message_id()
    msg_id = _as_str(_first(raw, "id", "message_id", "mid")) or platform_msg_id

    location = raw.get("location") if isinstance(raw.get("location"), Mapping) else {}
    template = raw.get("template") if isinstance(raw.get("template"), Mapping) else {}

    direction = _as_str(raw.get("direction"))
    if direction not in ("inbound", "outbound"):
        direction = None

    return CanonicalMessage(
        id=msg_id,
        type=_as_str(raw.get("type")) or "text",
        text=_as_str(_first(raw, "text", "body")),
        url=_as_str(_first(raw, "url", "media_url")),
        caption=_as_str(raw.get("caption")),
        filename=_as_str(raw.get("filename")),
        lat=_as_float(_coalesce(_first(raw, "latitude"), location.get("lat"))),
        lng=_as_float(_coalesce(_first(raw, "longitude"), location.get("lng"))),
        template_name=_as_str(_first(raw, "template_name") or template.get("name")),
        timestamp=parse_timestamp(_first(raw, "timestamp", "created_time")) or now,
        direction=direction,
        platform_msg_id=platform_msg_id,
        synthetic_id=synthetic,
    )


def _normalize_tag(raw: Any) -> Optional[CanonicalTag]:
    if isinstance(raw, Mapping):
        name = _as_str(raw.get("name"))
        if not name:
            return None
        return CanonicalTag(id=_as_str(raw.get("id")), name=name)
    name = _as_str(raw)
    return CanonicalTag(name=name) if name else None


def _normalize_custom_field(raw: Any) -> Optional[CanonicalCustomField]:
    if not isinstance(raw, Mapping):
        return None
    name = _as_str(_first(raw, "name", "field_name"))
    if not name:
        return None
    value = raw.get("value", raw.get("field_value"))
    return CanonicalCustomField(id=_as_str(raw.get("id")), name=name, value=value)


def normalize_webhook(raw: Any) -> CanonicalEvent:
    """
    Normalize a raw webhook body into a CanonicalEvent.

    Raises WebhookValidationError when the body is not an object or carries
    neither `event_type` nor `type`.
    """
    if not isinstance(raw, Mapping):
        raise WebhookValidationError("Invalid JSON payload")

    event_type = _as_str(_first(raw, "event_type", "type"))
    if not event_type:
        raise WebhookValidationError("Missing event_type")

    now = datetime.now(timezone.utc)
    subscriber = SubscriberPayload.from_raw(raw.get("subscriber"))

    subscriber_id = _as_str(raw.get("subscriber_id"))
    if subscriber_id is None and subscriber is not None:
        subscriber_id = subscriber.id
    if subscriber is not None and subscriber.id is None and subscriber_id is not None:
        subscriber.id = subscriber_id

    event = CanonicalEvent(
        event_type=event_type,
        subscriber_id=subscriber_id,
        subscriber=subscriber,
        message=_normalize_message(raw.get("message"), now),
        tag=_normalize_tag(raw.get("tag")),
        custom_field=_normalize_custom_field(raw.get("custom_field")),
        timestamp=parse_timestamp(raw.get("timestamp")) or now,
        extra={k: v for k, v in raw.items() if k not in _KNOWN_FIELDS},
    )

    if event.message is not None and event.message.synthetic_id:
        logger.warning(
            "Webhook message without platform id, using synthetic id",
            extra={"event_type": event_type, "subscriber_id": subscriber_id},
        )
    return event
