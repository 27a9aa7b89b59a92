import asyncio
import json
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Optional
from pydantic import ValidationError
from webhook_ingest.core.exceptions import (DuplicateEventError, InvalidPayloadError, InvalidSignatureError,
                                            MalformedEventError, MissingEventIdError, MissingSignatureError,
                                            WebhookProcessingError)
from webhook_ingest.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from webhook_ingest.schemas.events import PaymentEvent, WebhookPayload, parse_event
from webhook_ingest.schemas.webhook import NewWebhookEvent, WebhookJob, WebhookResponse
from webhook_ingest.services.event_processor import EventProcessor
from webhook_ingest.services.idempotency import IdempotencyLedger
from webhook_ingest.services.signature import SignatureValidator
from webhook_ingest.services.webhook_queue import WebhookQueue, job_key_for

logger = logging.getLogger(__name__)

PROCESSED = "Webhook processed successfully"
ALREADY_PROCESSED = "Webhook already processed"
IN_FLIGHT = "Webhook already being processed"
QUEUED = "Webhook accepted for processing"


class ProcessOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    SKIPPED = "SKIPPED"


class WebhookService:
    """
    Intake state machine for one provider plus the shared
    claim -> process -> complete/fail path used by the queue and retry workers.

    Idempotency is guaranteed by:
    1. the unique (provider, event_id) row created on first sight
    2. is_processed short-circuit for terminal rows
    3. the conditional PENDING -> PROCESSING claim, which only one caller wins
    """

    def __init__(self, ledger: IdempotencyLedger, processor: EventProcessor, validator: SignatureValidator,
                 provider: str = "razorpay", queue: Optional[WebhookQueue] = None,
                 async_processing: bool = False, timeout_seconds: float = 30,
                 stale_after: timedelta = timedelta(minutes=5)):
        if async_processing and queue is None:
            raise ValueError("async processing needs a queue")
        self.ledger = ledger
        self.processor = processor
        self.validator = validator
        self.provider = provider
        self.queue = queue
        self.async_processing = async_processing
        self.timeout_seconds = timeout_seconds
        self.stale_after = stale_after

    async def ingest(self, payload: bytes, signature: Optional[str]) -> WebhookResponse:
        # 1. authenticate before touching the ledger
        if not signature:
            raise MissingSignatureError()
        if not self.validator.verify(payload, signature):
            logger.warning(f"Rejected {self.provider} webhook with invalid signature")
            raise InvalidSignatureError()

        # 2. parse
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidPayloadError()
        if not isinstance(data, dict) or not data.get("id"):
            raise MissingEventIdError()
        try:
            event = parse_event(data)
        except ValidationError as e:
            logger.warning(f"Malformed {self.provider} webhook {data.get('id')}: {e}")
            raise MalformedEventError()

        logger.info(f"Received webhook: {event.event} (id: {event.id})")

        # 3. idempotency
        if await self.ledger.is_processed(self.provider, event.id):
            logger.info(f"Webhook {event.id} already processed, skipping")
            return WebhookResponse(success=True, message=ALREADY_PROCESSED)

        try:
            record_id = await self.ledger.create_event(NewWebhookEvent(
                provider=self.provider,
                event_id=event.id,
                event_type=event.event,
                signature=signature,
                payload=payload.decode("utf-8"),
            ))
        except DuplicateEventError:
            # lost the insert race, or a redelivery of a row that is pending a retry
            existing = await self.ledger.find_event(self.provider, event.id)
            if existing is None:
                # deleted in between by the retention cleanup
                raise
            if existing.is_terminal:
                return WebhookResponse(success=True, message=ALREADY_PROCESSED)
            record_id = existing.id

        # 4. process
        if self.async_processing:
            await self.enqueue(record_id, event)
            return WebhookResponse(success=True, message=QUEUED)

        outcome = await self.process_record(record_id, event)
        if outcome == ProcessOutcome.COMPLETED:
            return WebhookResponse(success=True, message=PROCESSED)
        if outcome == ProcessOutcome.SKIPPED:
            if await self.ledger.is_processed(self.provider, event.id):
                return WebhookResponse(success=True, message=ALREADY_PROCESSED)
            return WebhookResponse(success=True, message=IN_FLIGHT)
        raise WebhookProcessingError()

    async def enqueue(self, record_id: uuid.UUID, event: WebhookPayload) -> bool:
        order_id = payment_id = amount = currency = None
        if isinstance(event, PaymentEvent):
            order_id, payment_id = event.order_id, event.payment_id
            amount, currency = event.payment.amount, event.payment.currency
        return await self.queue.enqueue(WebhookJob(
            job_id=job_key_for(self.provider, event.id, order_id, payment_id),
            record_id=record_id,
            provider=self.provider,
            event_id=event.id,
            event_type=event.event,
            order_id=order_id,
            payment_id=payment_id,
            amount=amount,
            currency=currency,
        ))

    async def process_record(self, record_id: uuid.UUID, event: WebhookPayload) -> ProcessOutcome:
        """
        Claim the ledger row and apply the event. Processing errors become
        ledger transitions; ledger errors propagate.
        """
        if not await self.ledger.mark_processing(record_id, stale_after=self.stale_after):
            return ProcessOutcome.SKIPPED

        try:
            await asyncio.wait_for(self.processor.handle(event), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            # left PROCESSING; release_stale or a later delivery re-admits it
            logger.error(
                f"Webhook event {record_id} timed out after {self.timeout_seconds}s")
            return ProcessOutcome.TIMED_OUT
        except Exception as e:
            logger.error(f"Webhook event {record_id} processing failed: {e}", exc_info=True)
            retryable = getattr(e, "retryable", True)
            status = await self.ledger.mark_failed(record_id, str(e) or type(e).__name__, should_retry=retryable)
            if status == WebhookEventStatus.FAILED:
                return ProcessOutcome.FAILED
            return ProcessOutcome.RETRY_SCHEDULED

        await self.ledger.mark_completed(record_id)
        return ProcessOutcome.COMPLETED

    async def redrive(self, record: WebhookEvent) -> ProcessOutcome:
        """Re-run a stored ledger row from its verbatim payload."""
        try:
            event = parse_event(json.loads(record.payload))
        except (ValueError, ValidationError) as e:
            # stored payload passed validation on intake; retrying cannot fix it
            logger.error(f"Stored payload of webhook event {record.id} is unreadable: {e}")
            await self.ledger.mark_failed(record.id, f"unreadable payload: {e}", should_retry=False)
            return ProcessOutcome.FAILED
        return await self.process_record(record.id, event)
