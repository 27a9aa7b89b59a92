import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger, DateTime, Enum as SAEnum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from webhook_ingest.db.base import Base
from webhook_ingest.db.models.timestamp import TimestampMixin


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# moves a confirmed webhook may apply; anything else is rejected
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.REFUNDED: set(),
}


class Payment(Base, TimestampMixin):
    """Owned by the payments CRUD layer; webhooks only move its status."""
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), nullable=False)
    provider_order_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True)
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(
        String(3), default="INR", nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)
