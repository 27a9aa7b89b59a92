from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from webhook_ingest.db.models.payment import Payment, PaymentStatus


class PaymentRepository:
    """Payment lookups and status writes, always inside the caller's transaction."""

    async def get_by_order_id(self, db_session: AsyncSession, order_id: str, for_update: bool = True) -> Optional[Payment]:
        query = select(Payment).where(Payment.provider_order_id == order_id)
        if for_update:
            # a concurrent event for the same payment waits here instead of
            # overwriting a status it never saw
            query = query.with_for_update()
        result = await db_session.execute(query)
        return result.scalar_one_or_none()

    def apply_status(self, payment: Payment, status: PaymentStatus, provider_payment_id: Optional[str] = None):
        payment.status = status
        if provider_payment_id:
            payment.provider_payment_id = provider_payment_id
        payment.paid_at = datetime.now(timezone.utc) if status == PaymentStatus.COMPLETED else None
