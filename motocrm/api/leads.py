"""
CRM-side lead and conversation mutations.

Each mutation commits to the CRM store first, then enqueues an outbound
sync record so the change is mirrored on the chat platform. A platform
outage leaves the CRM change in place and the record failed for the drain.

Operator messages are the exception: they are sent synchronously, and a
platform failure returns 502 without storing anything.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from motocrm.api.deps import get_db, get_services
from motocrm.integrations.platform_base import PlatformError
from motocrm.models.conversation import Conversation
from motocrm.models.lead import Lead, STAGE_TAGS
from motocrm.models.sync_record import SyncKind, SyncRecord
from motocrm.schemas.api_responses import (
    AssignConversationRequest,
    ConversationSummary,
    LeadDetail,
    LeadMutationResponse,
    LeadProfileUpdate,
    SendMessageRequest,
    SentMessageResponse,
    StageChangeRequest,
    SyncRecordSummary,
    TagChangeRequest,
)
from motocrm.services.container import Services
from motocrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["leads"])


def _lead_detail(lead: Lead) -> LeadDetail:
    return LeadDetail(
        id=str(lead.id),
        name=lead.name,
        phone=lead.phone,
        email=lead.email,
        subscriber_id=lead.subscriber_id,
        source_channel=lead.source_channel,
        stage=lead.stage,
        tags=list(lead.tags or []),
        custom_fields=dict(lead.custom_fields or {}),
        created_at=lead.created_at,
        updated_at=lead.updated_at,
    )


def _sync_summary(record: Optional[SyncRecord]) -> Optional[SyncRecordSummary]:
    if record is None:
        return None
    return SyncRecordSummary(
        id=str(record.id),
        kind=record.kind,
        status=record.status,
        attempts=record.attempts,
        last_error=record.last_error,
    )


def _conversation_summary(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=str(conversation.id),
        lead_id=str(conversation.lead_id),
        channel=conversation.channel,
        channel_identifier=conversation.channel_identifier,
        status=conversation.status,
        assigned_agent=conversation.assigned_agent,
        last_message_at=conversation.last_message_at,
    )


async def _get_lead_or_404(db: AsyncSession, lead_id: uuid.UUID) -> Lead:
    lead = await db.get(Lead, lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.get("/leads/{lead_id}", response_model=LeadDetail)
async def get_lead(lead_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return _lead_detail(await _get_lead_or_404(db, lead_id))


@router.post("/leads/{lead_id}/stage", response_model=LeadMutationResponse)
async def change_stage(
    lead_id: uuid.UUID,
    payload: StageChangeRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Move a lead to another pipeline stage and mirror the stage tag."""
    if payload.stage not in STAGE_TAGS:
        raise HTTPException(status_code=400, detail=f"Unknown stage: {payload.stage}")

    lead = await _get_lead_or_404(db, lead_id)
    previous_stage = lead.stage
    if previous_stage == payload.stage:
        return LeadMutationResponse(lead=_lead_detail(lead))

    lead.stage = payload.stage
    await db.commit()
    logger.info(
        "Lead stage %s -> %s", previous_stage, payload.stage,
        extra={"lead_id": str(lead.id)},
    )

    record = await services.sync_queue.enqueue(
        lead.id,
        SyncKind.STAGE_CHANGE,
        {"previous_stage": previous_stage, "new_stage": payload.stage},
    )
    return LeadMutationResponse(lead=_lead_detail(lead), sync=_sync_summary(record))


@router.post("/leads/{lead_id}/tags", response_model=LeadMutationResponse)
async def change_tags(
    lead_id: uuid.UUID,
    payload: TagChangeRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    add = [t.strip() for t in payload.add if t and t.strip()]
    remove = [t.strip() for t in payload.remove if t and t.strip()]
    if not add and not remove:
        raise HTTPException(status_code=400, detail="Nothing to change")

    lead = await _get_lead_or_404(db, lead_id)
    tags = [t for t in (lead.tags or []) if t not in remove]
    for tag in add:
        if tag not in tags:
            tags.append(tag)
    lead.tags = tags
    await db.commit()

    record = await services.sync_queue.enqueue(
        lead.id, SyncKind.TAG_CHANGE, {"add": add, "remove": remove}
    )
    return LeadMutationResponse(lead=_lead_detail(lead), sync=_sync_summary(record))


@router.patch("/leads/{lead_id}", response_model=LeadMutationResponse)
async def update_lead(
    lead_id: uuid.UUID,
    payload: LeadProfileUpdate,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Edit contact details; changed fields are pushed to the subscriber profile."""
    lead = await _get_lead_or_404(db, lead_id)
    fields: dict = {}

    if payload.name and payload.name.strip():
        lead.name = payload.name.strip()
        first, _, last = lead.name.partition(" ")
        fields["first_name"] = first
        if last:
            fields["last_name"] = last
    if payload.phone and payload.phone.strip():
        lead.phone = normalize_phone(payload.phone)
        fields["phone"] = lead.phone
    if payload.email and payload.email.strip():
        lead.email = payload.email.strip()
        fields["email"] = lead.email
    if payload.custom_fields:
        merged = dict(lead.custom_fields or {})
        merged.update(payload.custom_fields)
        lead.custom_fields = merged

    if not fields and not payload.custom_fields:
        raise HTTPException(status_code=400, detail="Nothing to change")
    await db.commit()

    record = await services.sync_queue.enqueue(
        lead.id,
        SyncKind.PROFILE_UPDATE,
        {"fields": fields, "custom_fields": payload.custom_fields},
    )
    return LeadMutationResponse(lead=_lead_detail(lead), sync=_sync_summary(record))


@router.post("/conversations/{conversation_id}/close", response_model=ConversationSummary)
async def close_conversation(conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation.status != "closed":
        conversation.status = "closed"
        conversation.closed_at = datetime.now(timezone.utc)
        await db.flush()
        logger.info("Conversation closed", extra={"conversation_id": str(conversation.id)})
    return _conversation_summary(conversation)


@router.post("/conversations/{conversation_id}/assign", response_model=ConversationSummary)
async def assign_conversation(
    conversation_id: uuid.UUID,
    payload: AssignConversationRequest,
    db: AsyncSession = Depends(get_db),
):
    """Assign (or with agent=null, unassign) a human agent."""
    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    conversation.assigned_agent = (payload.agent or "").strip() or None
    await db.flush()
    return _conversation_summary(conversation)


@router.post("/conversations/{conversation_id}/messages", response_model=SentMessageResponse)
async def send_message(
    conversation_id: uuid.UUID,
    payload: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Send an operator text to the subscriber and record it in the thread."""
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message text is empty")

    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    lead = await db.get(Lead, conversation.lead_id)
    if lead is None or not lead.subscriber_id:
        raise HTTPException(status_code=409, detail="Lead has no subscriber id")

    try:
        await services.platform.send_text(lead.subscriber_id, text)
    except PlatformError as e:
        logger.warning(
            "Operator message not delivered: %s", str(e),
            extra={"conversation_id": str(conversation.id), "lead_id": str(lead.id)},
        )
        raise HTTPException(status_code=502, detail=str(e))

    result = await services.processor.record_outbound_message(conversation.id, text)
    return SentMessageResponse(conversation_id=result.conversation_id, message_id=result.message_id)
