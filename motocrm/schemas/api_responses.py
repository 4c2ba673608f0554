"""
API request/response schemas for the webhook, lead and sync admin endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WebhookAck(BaseModel):
    """Acknowledgement returned to the chat platform. Always HTTP 200."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    processed: bool
    lead_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    duplicate: Optional[bool] = None
    error: Optional[str] = None


class StageChangeRequest(BaseModel):
    stage: str


class TagChangeRequest(BaseModel):
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class LeadProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class AssignConversationRequest(BaseModel):
    agent: Optional[str] = None


class SyncRecordSummary(BaseModel):
    id: str
    kind: str
    status: str
    attempts: int
    last_error: Optional[str] = None


class LeadDetail(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    subscriber_id: Optional[str] = None
    source_channel: str
    stage: str
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LeadMutationResponse(BaseModel):
    lead: LeadDetail
    sync: Optional[SyncRecordSummary] = None


class ConversationSummary(BaseModel):
    id: str
    lead_id: str
    channel: str
    channel_identifier: str
    status: str
    assigned_agent: Optional[str] = None
    last_message_at: Optional[datetime] = None


class BulkSyncStartRequest(BaseModel):
    sync_id: Optional[str] = None


class BulkSyncStartResponse(BaseModel):
    sync_id: str
    status: str


class SendMessageRequest(BaseModel):
    text: str = Field(max_length=4096)


class SentMessageResponse(BaseModel):
    conversation_id: str
    message_id: str
