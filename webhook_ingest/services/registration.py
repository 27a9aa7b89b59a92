import uuid
from datetime import datetime, timezone
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from webhook_ingest.core.exceptions import RegistrationNotFoundError
from webhook_ingest.db.models.registration import FunnelStage, Registration, RegistrationStatus


class RegistrationLifecycle:
    async def get(self, db_session: AsyncSession, registration_id: uuid.UUID) -> Registration:
        result = await db_session.execute(
            select(Registration).where(Registration.id == registration_id).with_for_update())
        registration = result.scalar_one_or_none()
        if registration is None:
            raise RegistrationNotFoundError(registration_id)
        return registration

    async def mark_payment_completed(self, db_session: AsyncSession, registration_id: uuid.UUID) -> Registration:
        """Payment done: the registration is submitted for review."""
        registration = await self.get(db_session, registration_id)
        registration.status = RegistrationStatus.PENDING
        registration.funnel_stage = FunnelStage.PAYMENT_COMPLETED
        registration.submitted_at = datetime.now(timezone.utc)
        return registration
