import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import DateTime, Enum as SAEnum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from webhook_ingest.db.base import Base
from webhook_ingest.db.models.timestamp import TimestampMixin


class RegistrationStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class FunnelStage(str, Enum):
    DETAILS = "DETAILS"
    DOCUMENTS = "DOCUMENTS"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"


class Registration(Base, TimestampMixin):
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[RegistrationStatus] = mapped_column(
        SAEnum(RegistrationStatus), default=RegistrationStatus.DRAFT, nullable=False)
    funnel_stage: Mapped[FunnelStage] = mapped_column(
        SAEnum(FunnelStage), default=FunnelStage.DETAILS, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)
