"""
Audit row for one accepted chat-platform webhook delivery.
Written before processing and completed with the outcome, so a delivery that
crashed the processor still leaves its raw payload behind for replay.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from motocrm.database import Base


class WebhookStatus:
    RECEIVED = "received"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform: Mapped[str] = mapped_column(String(50), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    # sha256 of the canonical JSON; equal hashes mean a redelivery
    payload_hash: Mapped[str] = mapped_column(String(64), index=True)
    raw_payload: Mapped[dict] = mapped_column(JSONB)
    processing_status: Mapped[str] = mapped_column(
        String(20), default=WebhookStatus.RECEIVED, server_default=WebhookStatus.RECEIVED
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
