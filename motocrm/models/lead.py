"""
Lead model - a prospective motorcycle-financing customer.
Reconciliation target for chat-platform subscriber data.

Pipeline: new → consulting → collecting_documents → ready_for_review →
preapproved → approved → follow_up → closed_won → survey.
Side exits: rejected, referral_request.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from motocrm.database import Base


class PipelineStage:
    """Pipeline stage constants."""
    NEW = "new"
    CONSULTING = "consulting"
    COLLECTING_DOCUMENTS = "collecting_documents"
    READY_FOR_REVIEW = "ready_for_review"
    PREAPPROVED = "preapproved"
    APPROVED = "approved"
    FOLLOW_UP = "follow_up"
    CLOSED_WON = "closed_won"
    SURVEY = "survey"
    REJECTED = "rejected"
    REFERRAL_REQUEST = "referral_request"


# Stage -> tag applied on the chat platform. Tags are the platform's pipeline
# vocabulary, so they stay in Spanish.
STAGE_TAGS: dict[str, str] = {
    PipelineStage.NEW: "lead-nuevo",
    PipelineStage.CONSULTING: "lead-consultando",
    PipelineStage.COLLECTING_DOCUMENTS: "solicitando-documentos",
    PipelineStage.READY_FOR_REVIEW: "solicitud-en-proceso",
    PipelineStage.PREAPPROVED: "credito-preaprobado",
    PipelineStage.APPROVED: "credito-aprobado",
    PipelineStage.FOLLOW_UP: "en-seguimiento",
    PipelineStage.CLOSED_WON: "venta-cerrada",
    PipelineStage.SURVEY: "encuesta-pendiente",
    PipelineStage.REJECTED: "credito-rechazado",
    PipelineStage.REFERRAL_REQUEST: "solicitar-referido",
}

PIPELINE_TAGS = frozenset(STAGE_TAGS.values())

# Operator-managed tags that a stage change never removes
BUSINESS_TAGS = frozenset({"atencion-humana", "venta-concretada"})


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Contact info
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32))  # E.164 when parseable
    email: Mapped[Optional[str]] = mapped_column(String(255))

    # Chat platform identity
    subscriber_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    source_channel: Mapped[str] = mapped_column(
        String(20), default="unknown", nullable=False
    )  # whatsapp, instagram, facebook, unknown

    # Platform-mirrored data
    tags: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    custom_fields: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    stage: Mapped[str] = mapped_column(
        String(30), default=PipelineStage.NEW, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    conversations: Mapped[list["Conversation"]] = relationship(back_populates="lead")

    __table_args__ = (
        Index("ix_leads_phone", "phone"),
        Index("ix_leads_stage", "stage"),
    )

    def __repr__(self) -> str:
        return f"<Lead {self.id} stage={self.stage}>"
