"""
Conversation model - one channel-scoped chat thread per (channel, identifier).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from motocrm.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    channel: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # whatsapp, instagram, facebook, unknown
    channel_identifier: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="open", nullable=False
    )  # open, closed
    assigned_agent: Mapped[Optional[str]] = mapped_column(String(100))

    # Only ever moves forward, see EventProcessor._touch_conversation
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    lead: Mapped["Lead"] = relationship(back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(back_populates="conversation")

    __table_args__ = (
        UniqueConstraint("channel", "channel_identifier", name="uq_conversations_channel_identifier"),
        Index("ix_conversations_lead_id", "lead_id"),
        Index("ix_conversations_last_message_at", "last_message_at"),
    )

    def __repr__(self) -> str:
        return f"<Conversation {self.channel}:{self.channel_identifier} status={self.status}>"
