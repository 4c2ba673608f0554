"""
Webhook payload schemas - chat-platform subscribers and the canonical event.
Every raw webhook is normalized into a CanonicalEvent before processing.
"""
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

_SCALARS = (str, int, float, bool)


class SubscriberPayload(BaseModel):
    """
    A chat-platform subscriber. Unknown fields are kept (extra="allow") so
    nothing the platform sends is silently dropped.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    whatsapp_phone: Optional[str] = None
    email: Optional[str] = None
    page_id: Optional[str] = None
    instagram_id: Optional[str] = None
    ig_id: Optional[str] = None
    ig_username: Optional[str] = None
    # Last inbound text and activity time, as returned by getInfo
    last_input_text: Optional[str] = None
    last_interaction: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["SubscriberPayload"]:
        """
        Lenient constructor. Numeric ids become strings, malformed known
        fields are dropped instead of failing validation.
        """
        if not isinstance(raw, Mapping):
            return None

        known = cls.model_fields
        data: dict[str, Any] = {}
        for key, value in raw.items():
            if not isinstance(key, str) or value is None:
                continue
            if key == "tags":
                data["tags"] = _tag_names(value)
            elif key == "custom_fields":
                data["custom_fields"] = _custom_field_map(value)
            elif key in known:
                if isinstance(value, _SCALARS):
                    data[key] = str(value)
            else:
                data[key] = value
        return cls(**data)

    @property
    def full_name(self) -> Optional[str]:
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        if parts:
            return " ".join(parts)
        if self.name and self.name.strip():
            return self.name.strip()
        return None

    @property
    def best_phone(self) -> Optional[str]:
        return self.whatsapp_phone or self.phone or None


def _tag_names(value: Any) -> list[str]:
    """Tags arrive as ["a", "b"] or [{"id": 1, "name": "a"}]."""
    if not isinstance(value, list):
        return []
    names: list[str] = []
    for item in value:
        if isinstance(item, Mapping):
            item = item.get("name")
        if isinstance(item, _SCALARS) and str(item).strip():
            name = str(item).strip()
            if name not in names:
                names.append(name)
    return names


def _custom_field_map(value: Any) -> dict[str, Any]:
    """Custom fields arrive as a mapping or as [{"name": ..., "value": ...}]."""
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    if not isinstance(value, list):
        return {}
    fields: dict[str, Any] = {}
    for item in value:
        if isinstance(item, Mapping) and item.get("name"):
            fields[str(item["name"])] = item.get("value")
    return fields


class CanonicalMessage(BaseModel):
    id: str
    type: str = "text"
    text: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    template_name: Optional[str] = None
    timestamp: datetime
    direction: Optional[str] = None  # inbound, outbound
    platform_msg_id: str
    # Generated ids are never matched against each other for dedup
    synthetic_id: bool = False


class CanonicalTag(BaseModel):
    id: Optional[str] = None
    name: str


class CanonicalCustomField(BaseModel):
    id: Optional[str] = None
    name: str
    value: Any = None


class CanonicalEvent(BaseModel):
    event_type: str
    subscriber_id: Optional[str] = None
    subscriber: Optional[SubscriberPayload] = None
    message: Optional[CanonicalMessage] = None
    tag: Optional[CanonicalTag] = None
    custom_field: Optional[CanonicalCustomField] = None
    timestamp: datetime
    # Top-level fields this service does not interpret (flow, button, data, ...)
    extra: dict[str, Any] = Field(default_factory=dict)
