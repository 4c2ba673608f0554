"""
Message model - one inbound or outbound chat message. Immutable once stored.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from motocrm.database import Base


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )

    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    message_type: Mapped[str] = mapped_column(
        String(20), default="text", nullable=False
    )  # text, image, video, audio, file, location, template, ...
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_url: Mapped[Optional[str]] = mapped_column(Text)

    platform_msg_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint("conversation_id", "platform_msg_id", name="uq_messages_platform_msg_id"),
        Index("ix_messages_sent_at", "sent_at"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.direction} {self.message_type} {self.platform_msg_id}>"
