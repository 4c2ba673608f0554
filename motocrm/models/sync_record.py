"""
Outbound sync queue entry - one attempt to mirror a CRM change on the chat platform.
Kept as an audit trail; old succeeded rows are purged by retention.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from motocrm.database import Base


class SyncStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncKind:
    STAGE_CHANGE = "stage_change"
    TAG_CHANGE = "tag_change"
    PROFILE_UPDATE = "profile_update"

    ALL = ("stage_change", "tag_change", "profile_update")


class SyncRecord(Base):
    __tablename__ = "sync_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False, index=True)
    kind = Column(String(30), nullable=False)  # stage_change, tag_change, profile_update
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(
        String(20), nullable=False, default=SyncStatus.PENDING, server_default="pending", index=True
    )  # pending, in_progress, succeeded, failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sync_records_status_created", "status", "created_at"),
    )
