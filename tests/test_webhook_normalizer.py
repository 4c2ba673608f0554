"""
Tests for motocrm/services/webhook_normalizer.py - raw payload -> CanonicalEvent.
"""
from datetime import datetime, timezone

import pytest

from motocrm.services.webhook_normalizer import (
    WebhookValidationError,
    normalize_webhook,
    parse_timestamp,
)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_missing_event_type_raises(self):
        with pytest.raises(WebhookValidationError, match="Missing event_type"):
            normalize_webhook({"subscriber_id": 1})

    def test_blank_event_type_raises(self):
        with pytest.raises(WebhookValidationError):
            normalize_webhook({"event_type": "  "})

    def test_non_object_body_raises(self):
        with pytest.raises(WebhookValidationError, match="Invalid JSON payload"):
            normalize_webhook(["not", "an", "object"])

    def test_type_is_accepted_as_event_type(self):
        assert normalize_webhook({"type": "tag_added"}).event_type == "tag_added"

    def test_event_type_wins_over_type(self):
        assert normalize_webhook({"event_type": "message_received", "type": "x"}).event_type == "message_received"


# ---------------------------------------------------------------------------
# Subscriber
# ---------------------------------------------------------------------------

class TestSubscriber:
    def test_numeric_subscriber_id_is_stringified(self):
        event = normalize_webhook({"event_type": "new_subscriber", "subscriber_id": 987654321})
        assert event.subscriber_id == "987654321"

    def test_subscriber_id_falls_back_to_embedded_id(self):
        event = normalize_webhook({"event_type": "new_subscriber", "subscriber": {"id": 55}})
        assert event.subscriber_id == "55"
        assert event.subscriber.id == "55"

    def test_embedded_subscriber_inherits_top_level_id(self):
        event = normalize_webhook({
            "event_type": "new_subscriber",
            "subscriber_id": 987654321,
            "subscriber": {"phone": "+543709876543", "first_name": "María"},
        })
        assert event.subscriber.id == "987654321"
        assert event.subscriber.phone == "+543709876543"
        assert event.subscriber.full_name == "María"

    def test_platform_tag_and_custom_field_shapes(self):
        event = normalize_webhook({
            "event_type": "subscriber_updated",
            "subscriber": {
                "id": 1,
                "tags": [{"id": 1, "name": "lead-nuevo"}, {"id": 2, "name": "lead-nuevo"}, "atencion-humana"],
                "custom_fields": [{"id": 9, "name": "dni", "value": "30123456"}],
            },
        })
        assert event.subscriber.tags == ["lead-nuevo", "atencion-humana"]
        assert event.subscriber.custom_fields == {"dni": "30123456"}

    def test_unknown_subscriber_fields_are_preserved(self):
        event = normalize_webhook({
            "event_type": "new_subscriber",
            "subscriber": {"id": 1, "live_chat_url": "https://x", "gender": "female"},
        })
        assert event.subscriber.model_extra["live_chat_url"] == "https://x"

    def test_malformed_known_field_is_dropped(self):
        event = normalize_webhook({"event_type": "new_subscriber", "subscriber": {"id": 1, "phone": {"x": 1}}})
        assert event.subscriber.phone is None

    def test_non_object_subscriber_is_ignored(self):
        event = normalize_webhook({"event_type": "new_subscriber", "subscriber": "nope", "subscriber_id": 3})
        assert event.subscriber is None
        assert event.subscriber_id == "3"


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

class TestMessage:
    def test_text_message(self):
        event = normalize_webhook({
            "event_type": "message_received",
            "subscriber_id": 1,
            "message": {"id": "msg_1", "text": "Hola", "timestamp": 1700000000},
        })
        msg = event.message
        assert msg.id == "msg_1"
        assert msg.platform_msg_id == "msg_1"
        assert msg.type == "text"
        assert msg.text == "Hola"
        assert msg.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert msg.synthetic_id is False

    def test_platform_msg_id_takes_precedence(self):
        event = normalize_webhook({
            "event_type": "message_received",
            "message": {"platform_msg_id": "wamid.1", "id": "internal_9"},
        })
        assert event.message.platform_msg_id == "wamid.1"
        assert event.message.id == "internal_9"

    @pytest.mark.parametrize("key", ["message_id", "mid"])
    def test_id_fallbacks(self, key):
        event = normalize_webhook({"event_type": "message_received", "message": {key: "m_77"}})
        assert event.message.platform_msg_id == "m_77"

    def test_missing_ids_get_distinct_synthetic_ids(self):
        raw = {"event_type": "message_received", "message": {"text": "hi"}}
        first = normalize_webhook(raw).message
        second = normalize_webhook(raw).message
        assert first.synthetic_id and second.synthetic_id
        assert first.platform_msg_id.startswith("synthetic_")
        assert first.platform_msg_id != second.platform_msg_id

    def test_body_and_media_url_fallbacks(self):
        event = normalize_webhook({
            "event_type": "message_received",
            "message": {"id": "m", "type": "image", "body": "caption-ish", "media_url": "https://cdn/x.jpg"},
        })
        assert event.message.text == "caption-ish"
        assert event.message.url == "https://cdn/x.jpg"

    def test_nested_location_and_template(self):
        event = normalize_webhook({
            "event_type": "message_sent",
            "message": {
                "id": "m",
                "type": "location",
                "location": {"lat": -27.45, "lng": "-58.98"},
                "template": {"name": "bienvenida"},
            },
        })
        assert event.message.lat == -27.45
        assert event.message.lng == -58.98
        assert event.message.template_name == "bienvenida"

    def test_zero_coordinates_are_kept(self):
        event = normalize_webhook({
            "event_type": "message_received",
            "message": {"id": "m", "latitude": 0.0, "longitude": 0, "location": {"lat": 5, "lng": 6}},
        })
        assert event.message.lat == 0.0
        assert event.message.lng == 0.0

    def test_created_time_fallback(self):
        event = normalize_webhook({
            "event_type": "message_received",
            "message": {"id": "m", "created_time": "2024-03-01T12:00:00Z"},
        })
        assert event.message.timestamp == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_invalid_direction_is_dropped(self):
        event = normalize_webhook({"event_type": "message_received", "message": {"id": "m", "direction": "sideways"}})
        assert event.message.direction is None

    def test_non_object_message_is_ignored(self):
        assert normalize_webhook({"event_type": "message_received", "message": "hi"}).message is None


# ---------------------------------------------------------------------------
# Tags, custom fields, passthrough
# ---------------------------------------------------------------------------

class TestTagAndCustomField:
    def test_tag_object(self):
        tag = normalize_webhook({"event_type": "tag_added", "tag": {"id": 4, "name": "atencion-humana"}}).tag
        assert tag.id == "4"
        assert tag.name == "atencion-humana"

    def test_tag_string(self):
        assert normalize_webhook({"event_type": "tag_added", "tag": "vip"}).tag.name == "vip"

    def test_tag_without_name_is_none(self):
        assert normalize_webhook({"event_type": "tag_added", "tag": {"id": 4}}).tag is None

    def test_custom_field(self):
        field = normalize_webhook({
            "event_type": "custom_field_changed",
            "custom_field": {"id": 3, "name": "dni", "value": 30123456},
        }).custom_field
        assert field.name == "dni"
        assert field.value == 30123456

    def test_unrecognized_top_level_fields_go_to_extra(self):
        event = normalize_webhook({"event_type": "flow_completed", "flow": {"ns": "content1"}, "button": "si"})
        assert event.extra == {"flow": {"ns": "content1"}, "button": "si"}


class TestParseTimestamp:
    def test_epoch_seconds(self):
        assert parse_timestamp(1700000000) == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_epoch_milliseconds(self):
        assert parse_timestamp(1700000000123).timestamp() == pytest.approx(1700000000.123)

    def test_numeric_string(self):
        assert parse_timestamp("1700000000") == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_iso_with_offset_is_converted_to_utc(self):
        assert parse_timestamp("2024-03-01T09:00:00-03:00") == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"a": 1}])
    def test_unparseable_returns_none(self, value):
        assert parse_timestamp(value) is None

    def test_event_timestamp_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        event = normalize_webhook({"event_type": "x", "timestamp": "garbage"})
        assert event.timestamp >= before
