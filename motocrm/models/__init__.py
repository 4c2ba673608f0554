"""
Database models - import all models here so metadata.create_all can discover them.
"""
from motocrm.models.lead import Lead, PipelineStage, STAGE_TAGS, PIPELINE_TAGS, BUSINESS_TAGS
from motocrm.models.conversation import Conversation
from motocrm.models.message import Message
from motocrm.models.sync_record import SyncRecord, SyncStatus, SyncKind
from motocrm.models.webhook_event import WebhookEvent, WebhookStatus

__all__ = [
    "Lead",
    "PipelineStage",
    "STAGE_TAGS",
    "PIPELINE_TAGS",
    "BUSINESS_TAGS",
    "Conversation",
    "Message",
    "SyncRecord",
    "SyncStatus",
    "SyncKind",
    "WebhookEvent",
    "WebhookStatus",
]
