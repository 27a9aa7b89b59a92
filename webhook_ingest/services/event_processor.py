import logging
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from webhook_ingest.core.exceptions import InvalidPaymentTransitionError, PaymentNotFoundError
from webhook_ingest.db.models.payment import ALLOWED_TRANSITIONS, PaymentStatus
from webhook_ingest.db.unit_of_work import UnitOfWork
from webhook_ingest.schemas.events import (PaymentCapturedEvent, PaymentEvent, PaymentFailedEvent, UnknownEvent,
                                           WebhookPayload)
from webhook_ingest.services.audit_log import AuditLogWriter
from webhook_ingest.services.payment import PaymentRepository
from webhook_ingest.services.registration import RegistrationLifecycle

logger = logging.getLogger(__name__)

AUDIT_ACTION = "WEBHOOK_PROCESSED"


class EventProcessor:
    """
    Applies the business meaning of a verified webhook event.

    Event types handled:
    - payment.captured: payment COMPLETED, registration submitted for review
    - payment.failed: payment FAILED
    Anything else is logged and acknowledged, so new provider event types
    never turn into failures.
    """

    def __init__(self, session_factory: async_sessionmaker,
                 payments: Optional[PaymentRepository] = None,
                 registrations: Optional[RegistrationLifecycle] = None,
                 audit_log: Optional[AuditLogWriter] = None):
        self._session_factory = session_factory
        self._payments = payments or PaymentRepository()
        self._registrations = registrations or RegistrationLifecycle()
        self._audit_log = audit_log or AuditLogWriter()

    async def handle(self, event: WebhookPayload):
        logger.info(f"Processing webhook event {event.id} ({event.event})")
        if isinstance(event, PaymentCapturedEvent):
            await self._apply_payment_event(event, PaymentStatus.COMPLETED)
        elif isinstance(event, PaymentFailedEvent):
            await self._apply_payment_event(event, PaymentStatus.FAILED)
        elif isinstance(event, UnknownEvent):
            logger.info(f"Unhandled webhook event type: {event.event}")
        else:
            raise TypeError(f"unsupported event model {type(event).__name__}")

    async def _apply_payment_event(self, event: PaymentEvent, target: PaymentStatus):
        """
        One transaction: payment status, registration stage, audit row.
        Any exception rolls all of it back.
        """
        async with UnitOfWork(self._session_factory) as uow:
            payment = await self._payments.get_by_order_id(uow.session, event.order_id)
            if payment is None:
                raise PaymentNotFoundError(event.order_id)

            previous = payment.status
            if previous == target:
                logger.info(
                    f"Payment {payment.id} already {target.value}, event {event.id} is a no-op")
                return
            if target not in ALLOWED_TRANSITIONS[previous]:
                raise InvalidPaymentTransitionError(payment.id, previous.value, target.value)

            self._payments.apply_status(payment, target, event.payment_id)

            if target == PaymentStatus.COMPLETED:
                registration = await self._registrations.mark_payment_completed(
                    uow.session, payment.registration_id)
            else:
                registration = await self._registrations.get(uow.session, payment.registration_id)

            await self._audit_log.append(
                uow.session,
                actor_user_id=registration.user_id,
                entity_type="PAYMENT",
                entity_id=str(payment.id),
                action=AUDIT_ACTION,
                data={
                    "event_id": event.id,
                    "event_type": event.event,
                    "order_id": event.order_id,
                    "payment_id": event.payment_id,
                    "previous_status": previous.value,
                    "new_status": target.value,
                    "amount": event.payment.amount,
                    "currency": event.payment.currency,
                    "error_code": event.payment.error_code,
                    "error_description": event.payment.error_description,
                },
            )

        logger.info(
            f"Payment {event.order_id} moved {previous.value} -> {target.value} via webhook {event.id}")
