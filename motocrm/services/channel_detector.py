"""
Channel detector - classifies which messaging channel a subscriber came from.

Priority order, first match wins:
1. Instagram fields (instagram_id, ig_id, ig_username)  -> instagram
2. page_id                                               -> facebook
3. whatsapp_phone                                        -> whatsapp
4. phone without page_id                                 -> whatsapp (heuristic)
5. email without phone or page_id                        -> facebook (heuristic)
6. otherwise                                             -> unknown

page_id outranks a generic phone: WhatsApp subscribers never carry a page_id.
Rules 4 and 5 are best-effort guesses, not platform guarantees.
"""
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

from motocrm.schemas.webhook_payloads import SubscriberPayload
from motocrm.utils.phone import normalize_phone


class Channel:
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ChannelDetection:
    detected: str
    reason: str


SubscriberLike = Union[SubscriberPayload, Mapping, None]


def _field(subscriber: SubscriberLike, name: str) -> Optional[str]:
    """Read a field as a non-empty string, or None. Blank and 0 count as absent."""
    if subscriber is None:
        return None
    if isinstance(subscriber, Mapping):
        value = subscriber.get(name)
    else:
        value = getattr(subscriber, name, None)
        if value is None and subscriber.model_extra:
            value = subscriber.model_extra.get(name)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if not text or text == "0":
        return None
    return text


def detect_channel(subscriber: SubscriberLike) -> ChannelDetection:
    """Classify a subscriber's channel. Never raises."""
    for name in ("instagram_id", "ig_id", "ig_username"):
        if _field(subscriber, name):
            return ChannelDetection(Channel.INSTAGRAM, name)

    page_id = _field(subscriber, "page_id")
    if page_id:
        return ChannelDetection(Channel.FACEBOOK, "page_id present (Messenger)")

    if _field(subscriber, "whatsapp_phone"):
        return ChannelDetection(Channel.WHATSAPP, "whatsapp_phone present")

    phone = _field(subscriber, "phone")
    if phone:
        return ChannelDetection(Channel.WHATSAPP, "phone without page_id")

    if _field(subscriber, "email"):
        return ChannelDetection(Channel.FACEBOOK, "email without phone or page_id")

    return ChannelDetection(Channel.UNKNOWN, "no channel signals")


def channel_identifier(
    subscriber: SubscriberLike, channel: str, fallback: bool = True
) -> Optional[str]:
    """
    Identifier that keys a Conversation within its channel:
    instagram -> instagram id, whatsapp -> normalized phone,
    anything else (or a missing specific id) -> the subscriber id.

    With fallback=False only a channel-specific identifier is returned.
    """
    if channel == Channel.INSTAGRAM:
        ig = _field(subscriber, "instagram_id") or _field(subscriber, "ig_id")
        if ig:
            return ig
    elif channel == Channel.WHATSAPP:
        phone = _field(subscriber, "whatsapp_phone") or _field(subscriber, "phone")
        if phone:
            return normalize_phone(phone)
    if not fallback:
        return None
    return _field(subscriber, "id")
