import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import JSON, DateTime, Enum as SAEnum, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from webhook_ingest.db.base import Base
from webhook_ingest.db.models.timestamp import TimestampMixin


class WebhookEventStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (WebhookEventStatus.COMPLETED, WebhookEventStatus.FAILED)


class WebhookEvent(Base, TimestampMixin):
    """
    Idempotency record for one webhook delivery.
    (provider, event_id) is unique: the insert is the point where concurrent
    duplicate deliveries are serialized.
    """
    __table_args__ = (
        UniqueConstraint("provider", "event_id",
                         name="uq_webhook_events_provider_event_id"),
        Index("ix_webhook_events_status_next_retry_at",
              "status", "next_retry_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True)
    # raw body exactly as it was signed
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        SAEnum(WebhookEventStatus), default=WebhookEventStatus.PENDING, nullable=False)
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(
        Integer, default=3, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_trail: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), default=list, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
