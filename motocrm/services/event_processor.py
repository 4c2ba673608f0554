"""
Event processor - applies canonical webhook events to Lead / Conversation / Message.

Delivery is at-least-once from the chat platform; the observable effect must
be at-most-once:
- Each event is applied in ONE transaction.
- UNIQUE constraints (lead subscriber id, conversation channel+identifier,
  message conversation+platform id) settle concurrent find-or-create races.
  On IntegrityError the transaction is rolled back and the whole event is
  re-applied once; the second pass finds the rows the winner inserted.
- A Redis advisory lock per subscriber keeps concurrent deliveries from
  racing in the first place. Lead.phone is not unique, so an event for a
  phone-only subscriber (no id) is refused rather than applied unlocked.
- Conversation.last_message_at only moves forward (conditional UPDATE).

Every failure is caught here and reported as ProcessResult(success=False);
the webhook endpoint still acknowledges with HTTP 200.
"""
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from motocrm.integrations.platform_base import ChatPlatformClient, PlatformError
from motocrm.models.conversation import Conversation
from motocrm.models.lead import Lead, PipelineStage
from motocrm.models.message import Message
from motocrm.schemas.webhook_payloads import CanonicalEvent, CanonicalMessage, SubscriberPayload
from motocrm.services.channel_detector import Channel, channel_identifier, detect_channel
from motocrm.utils.locks import LockTimeoutError, subscriber_lock
from motocrm.utils.logging import mask_phone
from motocrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

DEFAULT_LEAD_NAME = "Chat contact"
MAX_APPLY_ATTEMPTS = 2
MEDIA_TYPES = ("image", "video", "audio", "file")
OPERATOR_MSG_PREFIX = "operator_"
LAST_MESSAGE_PREFIX = "last_"


class EventType:
    NEW_SUBSCRIBER = "new_subscriber"
    SUBSCRIBER_UPDATED = "subscriber_updated"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    CUSTOM_FIELD_CHANGED = "custom_field_changed"


@dataclass
class ProcessResult:
    success: bool
    processed: bool = True
    lead_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None


ApplyFn = Callable[[AsyncSession, CanonicalEvent, SubscriberPayload], Awaitable[ProcessResult]]


def message_content(message: CanonicalMessage) -> tuple[str, Optional[str]]:
    """Stored (content, media_url) for a message, by message type."""
    msg_type = message.type
    if msg_type == "text":
        return message.text or "", None
    if msg_type in MEDIA_TYPES:
        return message.caption or f"[{msg_type}]", message.url
    if msg_type == "location":
        return f"Location: {message.lat}, {message.lng}", None
    if msg_type == "template":
        content = message.template_name or "[template]"
        if message.text:
            content += f": {message.text}"
        return content, None
    return message.text or f"[{msg_type}]", message.url


def last_message_id(subscriber_id: Optional[str], last_interaction: Optional[datetime], text: str) -> str:
    """Stable platform id for a backfilled last message."""
    stamp = int(last_interaction.timestamp()) if last_interaction else 0
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{LAST_MESSAGE_PREFIX}{subscriber_id}_{stamp}_{digest}"


def _merge_tags(current: Optional[list], incoming: list[str]) -> list[str]:
    """Ordered union, duplicates suppressed."""
    merged = list(current or [])
    for tag in incoming:
        if tag and tag not in merged:
            merged.append(tag)
    return merged


class EventProcessor:
    """Reconciles chat-platform events with the CRM store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: Optional[ChatPlatformClient] = None,
        lock=subscriber_lock,
    ):
        self.session_factory = session_factory
        self.platform = platform
        self._lock = lock
        self._handlers = {
            EventType.NEW_SUBSCRIBER: self.process_new_subscriber,
            EventType.SUBSCRIBER_UPDATED: self.process_new_subscriber,
            EventType.MESSAGE_RECEIVED: self.process_message,
            EventType.MESSAGE_SENT: self.process_message,
            EventType.TAG_ADDED: self.process_tag_event,
            EventType.TAG_REMOVED: self.process_tag_event,
            EventType.CUSTOM_FIELD_CHANGED: self.process_custom_field_event,
        }

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def process_event(self, event: CanonicalEvent) -> ProcessResult:
        """Dispatch one canonical event. Unrecognized event types are no-ops."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info(
                "Ignoring unhandled event type %s", event.event_type,
                extra={"event_type": event.event_type, "subscriber_id": event.subscriber_id},
            )
            return ProcessResult(success=True, processed=False)
        return await handler(event)

    async def process_new_subscriber(self, event: CanonicalEvent) -> ProcessResult:
        """Find-or-create the Lead; also stores an embedded message if present."""
        return await self._run(event, self._apply_subscriber)

    async def process_message(self, event: CanonicalEvent) -> ProcessResult:
        if event.message is None:
            return ProcessResult(success=False, processed=False, error="Missing message")
        return await self._run(event, self._apply_message)

    async def process_tag_event(self, event: CanonicalEvent) -> ProcessResult:
        if event.tag is None:
            return ProcessResult(success=False, processed=False, error="Missing tag")
        return await self._run(event, self._apply_tag)

    async def process_custom_field_event(self, event: CanonicalEvent) -> ProcessResult:
        if event.custom_field is None:
            return ProcessResult(success=False, processed=False, error="Missing custom_field")
        return await self._run(event, self._apply_custom_field)

    async def record_outbound_message(
        self, conversation_id, text: str, sent_at: Optional[datetime] = None
    ) -> ProcessResult:
        """Store an operator message that the platform already delivered."""
        sent_at = (sent_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
        async with self.session_factory() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                return ProcessResult(success=False, processed=False, error="Conversation not found")
            row = Message(
                conversation_id=conversation.id,
                direction="outbound",
                message_type="text",
                content=text,
                platform_msg_id=f"{OPERATOR_MSG_PREFIX}{uuid.uuid4().hex}",
                sent_at=sent_at,
            )
            session.add(row)
            await session.flush()
            await self._touch_conversation(session, conversation.id, sent_at)
            await session.commit()

        logger.info(
            "Operator message recorded",
            extra={"conversation_id": str(conversation.id), "lead_id": str(conversation.lead_id)},
        )
        return ProcessResult(
            success=True,
            lead_id=str(conversation.lead_id),
            conversation_id=str(conversation.id),
            message_id=str(row.id),
        )

    async def process_subscriber_snapshot(
        self,
        subscriber: SubscriberPayload,
        last_interaction: Optional[datetime] = None,
    ) -> ProcessResult:
        """
        Backfill from a looked-up subscriber: merge the Lead, find-or-create
        its Conversation, and store the subscriber's last known text.

        The platform exposes no message history, only `last_input_text`. Its
        message id is derived from subscriber, time and text, so a rerun
        finds the stored row instead of adding another. last_message_at
        moves forward to last_interaction when known.
        """
        message = None
        text = (subscriber.last_input_text or "").strip()
        if text:
            msg_id = last_message_id(subscriber.id, last_interaction, text)
            message = CanonicalMessage(
                id=msg_id,
                type="text",
                text=text,
                timestamp=last_interaction or datetime.now(timezone.utc),
                direction="inbound",
                platform_msg_id=msg_id,
            )
        event = CanonicalEvent(
            event_type=EventType.SUBSCRIBER_UPDATED,
            subscriber_id=subscriber.id,
            subscriber=subscriber,
            message=message,
            timestamp=last_interaction or datetime.now(timezone.utc),
        )

        async def apply(session: AsyncSession, event: CanonicalEvent, subscriber: SubscriberPayload):
            lead = await self._upsert_lead(session, subscriber)
            if event.message is not None:
                return await self._store_message(session, event, subscriber, lead)
            conversation = await self._resolve_conversation(session, subscriber, lead)
            if last_interaction is not None:
                await self._touch_conversation(session, conversation.id, last_interaction.astimezone(timezone.utc))
            return ProcessResult(success=True, lead_id=str(lead.id), conversation_id=str(conversation.id))

        return await self._run(event, apply)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def _run(self, event: CanonicalEvent, apply: ApplyFn) -> ProcessResult:
        try:
            subscriber = await self._resolve_subscriber(event)
            if subscriber is None:
                return ProcessResult(success=False, processed=False, error="Missing subscriber_id")

            lock_key = subscriber.id or normalize_phone(subscriber.best_phone)
            if not lock_key:
                return ProcessResult(
                    success=False, processed=False, error="Subscriber has no id or phone"
                )

            try:
                async with self._lock(lock_key) as held:
                    if held is False and not subscriber.id:
                        return self._refuse_unlocked(event, lock_key)
                    result = await self._apply_with_retry(apply, event, subscriber)
            except LockTimeoutError:
                if not subscriber.id:
                    return self._refuse_unlocked(event, lock_key)
                # Unique constraints still guard against duplicates
                logger.warning(
                    "Subscriber lock busy, applying without it",
                    extra={"subscriber_id": subscriber.id, "event_type": event.event_type},
                )
                result = await self._apply_with_retry(apply, event, subscriber)

            logger.info(
                "Processed %s%s", event.event_type, " (duplicate)" if result.duplicate else "",
                extra={
                    "event_type": event.event_type,
                    "subscriber_id": subscriber.id,
                    "lead_id": result.lead_id,
                    "conversation_id": result.conversation_id,
                },
            )
            return result
        except Exception as e:
            logger.error(
                "Event processing failed: %s", str(e),
                exc_info=True,
                extra={"event_type": event.event_type, "subscriber_id": event.subscriber_id},
            )
            return ProcessResult(success=False, processed=False, error=str(e))

    @staticmethod
    def _refuse_unlocked(event: CanonicalEvent, phone: str) -> ProcessResult:
        # Lead.phone is not unique: only the lock stops two phone-only
        # deliveries from each creating a Lead
        logger.warning(
            "No lock for phone-only subscriber %s, event not applied", mask_phone(phone),
            extra={"event_type": event.event_type},
        )
        return ProcessResult(
            success=False, processed=False, error="Subscriber lock unavailable for phone-only subscriber"
        )

    async def _apply_with_retry(
        self, apply: ApplyFn, event: CanonicalEvent, subscriber: SubscriberPayload
    ) -> ProcessResult:
        """Apply the event in one transaction, re-applying once after a lost insert race."""
        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            async with self.session_factory() as session:
                try:
                    result = await apply(session, event, subscriber)
                    await session.commit()
                    return result
                except IntegrityError:
                    await session.rollback()
                    if attempt >= MAX_APPLY_ATTEMPTS:
                        raise
                    logger.info(
                        "Concurrent insert detected, re-applying event",
                        extra={"event_type": event.event_type, "subscriber_id": subscriber.id},
                    )
        raise RuntimeError("unreachable")

    async def _resolve_subscriber(self, event: CanonicalEvent) -> Optional[SubscriberPayload]:
        """Embedded subscriber, else a platform lookup, else a bare {id}."""
        if event.subscriber is not None:
            subscriber = event.subscriber
            if subscriber.id is None and event.subscriber_id:
                subscriber.id = event.subscriber_id
            return subscriber

        if not event.subscriber_id:
            return None

        if self.platform is not None:
            try:
                raw = await self.platform.get_subscriber(event.subscriber_id)
            except PlatformError as e:
                logger.warning(
                    "Subscriber lookup failed, continuing with id only: %s", str(e),
                    extra={"subscriber_id": event.subscriber_id},
                )
                raw = None
            fetched = SubscriberPayload.from_raw(raw) if raw else None
            if fetched is not None:
                fetched.id = fetched.id or event.subscriber_id
                return fetched

        return SubscriberPayload(id=event.subscriber_id)

    # ------------------------------------------------------------------
    # Transactional steps
    # ------------------------------------------------------------------

    async def _apply_subscriber(
        self, session: AsyncSession, event: CanonicalEvent, subscriber: SubscriberPayload
    ) -> ProcessResult:
        lead = await self._upsert_lead(session, subscriber)
        if event.message is not None:
            return await self._store_message(session, event, subscriber, lead)
        return ProcessResult(success=True, lead_id=str(lead.id))

    async def _apply_message(
        self, session: AsyncSession, event: CanonicalEvent, subscriber: SubscriberPayload
    ) -> ProcessResult:
        lead = await self._upsert_lead(session, subscriber)
        return await self._store_message(session, event, subscriber, lead)

    async def _apply_tag(
        self, session: AsyncSession, event: CanonicalEvent, subscriber: SubscriberPayload
    ) -> ProcessResult:
        lead = await self._upsert_lead(session, subscriber)
        tag = event.tag.name
        if event.event_type == EventType.TAG_REMOVED:
            # Set difference; removing an absent tag is fine
            lead.tags = [t for t in (lead.tags or []) if t != tag]
        else:
            lead.tags = _merge_tags(lead.tags, [tag])
        await session.flush()
        return ProcessResult(success=True, lead_id=str(lead.id))

    async def _apply_custom_field(
        self, session: AsyncSession, event: CanonicalEvent, subscriber: SubscriberPayload
    ) -> ProcessResult:
        lead = await self._upsert_lead(session, subscriber)
        fields = dict(lead.custom_fields or {})
        fields[event.custom_field.name] = event.custom_field.value
        lead.custom_fields = fields
        await session.flush()
        return ProcessResult(success=True, lead_id=str(lead.id))

    async def _upsert_lead(self, session: AsyncSession, subscriber: SubscriberPayload) -> Lead:
        """
        Find the Lead by subscriber id, then by phone (linking the subscriber
        id when the Lead has none), else create it. Incoming empty values
        never overwrite stored ones.
        """
        phone = normalize_phone(subscriber.best_phone)
        lead = None

        if subscriber.id:
            result = await session.execute(select(Lead).where(Lead.subscriber_id == subscriber.id))
            lead = result.scalar_one_or_none()

        if lead is None and phone:
            result = await session.execute(
                select(Lead).where(Lead.phone == phone).order_by(Lead.created_at).limit(1)
            )
            lead = result.scalar_one_or_none()
            if lead is not None and lead.subscriber_id and subscriber.id and lead.subscriber_id != subscriber.id:
                # Phone belongs to another subscriber's Lead
                lead = None
            elif lead is not None and not lead.subscriber_id and subscriber.id:
                lead.subscriber_id = subscriber.id
                logger.info(
                    "Linked subscriber to existing lead by phone %s", mask_phone(phone),
                    extra={"lead_id": str(lead.id), "subscriber_id": subscriber.id},
                )

        detected = detect_channel(subscriber).detected

        if lead is None:
            lead = Lead(
                name=subscriber.full_name or DEFAULT_LEAD_NAME,
                phone=phone,
                email=(subscriber.email or "").strip() or None,
                subscriber_id=subscriber.id,
                source_channel=detected,
                tags=list(subscriber.tags),
                custom_fields={k: v for k, v in subscriber.custom_fields.items() if v not in (None, "")},
                stage=PipelineStage.NEW,
            )
            session.add(lead)
            await session.flush()
            logger.info(
                "Lead created from %s subscriber", detected,
                extra={"lead_id": str(lead.id), "subscriber_id": subscriber.id},
            )
            return lead

        self._merge_lead(lead, subscriber, phone, detected)
        await session.flush()
        return lead

    @staticmethod
    def _merge_lead(lead: Lead, subscriber: SubscriberPayload, phone: Optional[str], detected: str) -> None:
        name = subscriber.full_name
        if name:
            lead.name = name
        if phone:
            lead.phone = phone
        email = (subscriber.email or "").strip()
        if email:
            lead.email = email
        if lead.source_channel == Channel.UNKNOWN and detected != Channel.UNKNOWN:
            lead.source_channel = detected

        if subscriber.tags:
            merged = _merge_tags(lead.tags, subscriber.tags)
            if merged != (lead.tags or []):
                lead.tags = merged

        incoming = {k: v for k, v in subscriber.custom_fields.items() if v not in (None, "")}
        if incoming:
            fields = dict(lead.custom_fields or {})
            fields.update(incoming)
            lead.custom_fields = fields

    async def _resolve_conversation(
        self, session: AsyncSession, subscriber: SubscriberPayload, lead: Lead
    ) -> Conversation:
        channel = detect_channel(subscriber).detected
        if channel == Channel.UNKNOWN and lead.source_channel != Channel.UNKNOWN:
            channel = lead.source_channel

        identifier = channel_identifier(subscriber, channel, fallback=False)
        conversation = None
        if identifier is None:
            # No channel-specific id on this payload: reuse the Lead's thread
            result = await session.execute(
                select(Conversation)
                .where(Conversation.lead_id == lead.id, Conversation.channel == channel)
                .order_by(Conversation.created_at)
                .limit(1)
            )
            conversation = result.scalar_one_or_none()
            if conversation is not None:
                return conversation
            if channel == Channel.WHATSAPP and lead.phone:
                identifier = lead.phone
            else:
                identifier = subscriber.id or lead.subscriber_id

        if not identifier:
            raise ValueError("Cannot determine conversation identifier")

        result = await session.execute(
            select(Conversation).where(
                Conversation.channel == channel,
                Conversation.channel_identifier == identifier,
            )
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            conversation = Conversation(
                lead_id=lead.id,
                channel=channel,
                channel_identifier=identifier,
                status="open",
            )
            session.add(conversation)
            await session.flush()
            logger.info(
                "Conversation created on %s", channel,
                extra={"lead_id": str(lead.id), "conversation_id": str(conversation.id)},
            )
        return conversation

    async def _store_message(
        self,
        session: AsyncSession,
        event: CanonicalEvent,
        subscriber: SubscriberPayload,
        lead: Lead,
    ) -> ProcessResult:
        conversation = await self._resolve_conversation(session, subscriber, lead)
        message = event.message

        if not message.synthetic_id:
            result = await session.execute(
                select(Message.id).where(
                    Message.conversation_id == conversation.id,
                    Message.platform_msg_id == message.platform_msg_id,
                )
            )
            existing_id = result.scalar_one_or_none()
            if existing_id is not None:
                return ProcessResult(
                    success=True,
                    lead_id=str(lead.id),
                    conversation_id=str(conversation.id),
                    message_id=str(existing_id),
                    duplicate=True,
                )

        if event.event_type == EventType.MESSAGE_SENT:
            direction = "outbound"
        elif event.event_type == EventType.MESSAGE_RECEIVED:
            direction = "inbound"
        else:
            direction = message.direction or "inbound"

        content, media_url = message_content(message)
        sent_at = message.timestamp.astimezone(timezone.utc)
        row = Message(
            conversation_id=conversation.id,
            direction=direction,
            message_type=message.type,
            content=content,
            media_url=media_url,
            platform_msg_id=message.platform_msg_id,
            sent_at=sent_at,
        )
        session.add(row)
        await session.flush()

        await self._touch_conversation(session, conversation.id, sent_at)

        return ProcessResult(
            success=True,
            lead_id=str(lead.id),
            conversation_id=str(conversation.id),
            message_id=str(row.id),
        )

    @staticmethod
    async def _touch_conversation(session: AsyncSession, conversation_id, sent_at: datetime) -> None:
        """Advance last_message_at, never regress it for late-arriving messages."""
        await session.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                or_(
                    Conversation.last_message_at.is_(None),
                    Conversation.last_message_at <= sent_at,
                ),
            )
            .values(last_message_at=sent_at, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
