import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from webhook_ingest.core.exceptions import DuplicateEventError, WebhookEventNotFoundError
from webhook_ingest.db.models.timestamp import utcnow
from webhook_ingest.db.models.webhook_event import TERMINAL_STATUSES, WebhookEvent, WebhookEventStatus
from webhook_ingest.schemas.webhook import EventStats, NewWebhookEvent

logger = logging.getLogger(__name__)

STALE_PROCESSING_ERROR = "processing timed out"


class IdempotencyLedger:
    """
    Durable record of webhook deliveries keyed by (provider, event_id).

    Every write to webhook_events goes through this class so the status
    machine stays closed:

        PENDING -> PROCESSING -> COMPLETED
                             \\-> PENDING (retry scheduled) | FAILED

    Each method uses its own short session, so ledger state is committed
    independently of the business transaction it guards. Storage errors
    are not caught here.
    """

    def __init__(self, session_factory: async_sessionmaker, max_retries: int = 3, retry_delay_ms: int = 5000):
        self._session_factory = session_factory
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    async def is_processed(self, provider: str, event_id: str) -> bool:
        """True only for terminal rows. PENDING/PROCESSING rows are in flight."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.id)
                .where(WebhookEvent.provider == provider)
                .where(WebhookEvent.event_id == event_id)
                .where(WebhookEvent.status.in_(TERMINAL_STATUSES))
            )
            return result.scalar_one_or_none() is not None

    async def find_event(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.provider == provider)
                .where(WebhookEvent.event_id == event_id)
            )
            return result.scalar_one_or_none()

    async def get_event(self, record_id: uuid.UUID) -> Optional[WebhookEvent]:
        async with self._session_factory() as db:
            return await db.get(WebhookEvent, record_id)

    async def create_event(self, data: NewWebhookEvent) -> uuid.UUID:
        """
        Insert a PENDING row. Of several concurrent calls for the same
        (provider, event_id) exactly one succeeds; the others get
        DuplicateEventError.
        """
        record_id = uuid.uuid4()
        event = WebhookEvent(
            id=record_id,
            provider=data.provider,
            event_id=data.event_id,
            event_type=data.event_type,
            signature=data.signature,
            payload=data.payload,
            status=WebhookEventStatus.PENDING,
            retry_count=0,
            max_retries=self.max_retries,
            error_trail=[],
        )
        async with self._session_factory() as db:
            db.add(event)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateEventError(data.provider, data.event_id) from e

        logger.info(
            f"Created webhook event {record_id} for provider {data.provider}, event_id {data.event_id}")
        return record_id

    async def mark_processing(self, record_id: uuid.UUID, stale_after: Optional[timedelta] = None) -> bool:
        """
        Claim the row for processing. Only one caller can move a given row
        out of PENDING; a PROCESSING row is re-admitted only once its
        processed_at is older than `stale_after`.
        Returns True when this caller won the claim.
        """
        now = utcnow()
        claimable = WebhookEvent.status == WebhookEventStatus.PENDING
        if stale_after is not None:
            claimable = or_(
                claimable,
                and_(WebhookEvent.status == WebhookEventStatus.PROCESSING,
                     WebhookEvent.processed_at < now - stale_after),
            )
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .where(claimable)
                .values(status=WebhookEventStatus.PROCESSING, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            claimed = result.rowcount > 0
            if not claimed and await db.get(WebhookEvent, record_id) is None:
                raise WebhookEventNotFoundError(record_id)

        if claimed:
            logger.info(f"Marked webhook event as processing: {record_id}")
        else:
            logger.info(f"Webhook event {record_id} is not claimable, skipping")
        return claimed

    async def mark_completed(self, record_id: uuid.UUID):
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .where(WebhookEvent.status.in_((WebhookEventStatus.PENDING, WebhookEventStatus.PROCESSING)))
                .values(status=WebhookEventStatus.COMPLETED, processed_at=now,
                        next_retry_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 0:
                event = await db.get(WebhookEvent, record_id)
                if event is None:
                    raise WebhookEventNotFoundError(record_id)
                logger.warning(
                    f"Webhook event {record_id} already {event.status.value}, not marking completed")
                return

        logger.info(f"Marked webhook event as completed: {record_id}")

    async def mark_failed(self, record_id: uuid.UUID, error: str, should_retry: bool = True,
                          stale_before: Optional[datetime] = None) -> WebhookEventStatus:
        """
        Count a failed attempt. Schedules the next attempt with exponential
        backoff (retry_delay * 2^(retry_count-1)) while retries remain,
        otherwise the row becomes FAILED for good.

        With `stale_before` the failure only applies to a row that is still
        PROCESSING with processed_at older than it; a row someone re-claimed
        in the meantime is left alone.
        """
        query = select(WebhookEvent).where(WebhookEvent.id == record_id)
        if stale_before is not None:
            query = query.where(WebhookEvent.status == WebhookEventStatus.PROCESSING).where(
                WebhookEvent.processed_at < stale_before)
        async with self._session_factory() as db:
            result = await db.execute(query.with_for_update())
            event = result.scalar_one_or_none()
            if event is None:
                current = await db.get(WebhookEvent, record_id)
                if current is None:
                    raise WebhookEventNotFoundError(record_id)
                logger.info(
                    f"Webhook event {record_id} is no longer stale ({current.status.value}), not failing it")
                return current.status
            if event.is_terminal:
                logger.warning(
                    f"Webhook event {record_id} already {event.status.value}, ignoring failure: {error}")
                return event.status

            now = utcnow()
            retry_count = event.retry_count + 1
            can_retry = should_retry and retry_count < event.max_retries

            event.retry_count = retry_count
            event.last_error = error
            event.error_trail = [*(event.error_trail or []), {
                "attempt": retry_count,
                "error": error,
                "at": now.isoformat(),
            }]
            if can_retry:
                event.status = WebhookEventStatus.PENDING
                event.next_retry_at = now + timedelta(
                    milliseconds=self.retry_delay_ms * 2 ** (retry_count - 1))
            else:
                event.status = WebhookEventStatus.FAILED
                event.next_retry_at = None
            status = event.status
            next_retry_at = event.next_retry_at
            max_retries = event.max_retries
            await db.commit()

        if can_retry:
            logger.warning(
                f"Webhook event {record_id} failed, scheduled retry {retry_count}/{max_retries} at {next_retry_at.isoformat()}")
        else:
            logger.error(
                f"Webhook event {record_id} failed permanently after {retry_count} attempts: {error}")
        return status

    async def get_pending_retries(self, limit: int = 100) -> List[WebhookEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.status == WebhookEventStatus.PENDING)
                .where(WebhookEvent.next_retry_at <= utcnow())
                .where(WebhookEvent.retry_count < WebhookEvent.max_retries)
                .order_by(WebhookEvent.next_retry_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def release_stale(self, stale_after: timedelta) -> int:
        """
        Recover rows nobody is working on any more:
        - PROCESSING past `stale_after` (worker timed out or crashed) counts
          as a failed, retryable attempt;
        - PENDING with no retry time (created but never claimed) is made due now.
        """
        now = utcnow()
        cutoff = now - stale_after
        async with self._session_factory() as db:
            stale = await db.execute(
                select(WebhookEvent.id)
                .where(WebhookEvent.status == WebhookEventStatus.PROCESSING)
                .where(WebhookEvent.processed_at < cutoff)
            )
            stale_ids = list(stale.scalars().all())
            orphaned = await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.status == WebhookEventStatus.PENDING)
                .where(WebhookEvent.next_retry_at.is_(None))
                .where(WebhookEvent.created_at < cutoff)
                .values(next_retry_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            orphaned_count = orphaned.rowcount

        for record_id in stale_ids:
            await self.mark_failed(record_id, STALE_PROCESSING_ERROR, should_retry=True, stale_before=cutoff)

        released = len(stale_ids) + orphaned_count
        if released:
            logger.warning(
                f"Released {len(stale_ids)} stale processing and {orphaned_count} orphaned pending webhook events")
        return released

    async def cleanup_old_events(self, retention_days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(WebhookEvent)
                .where(WebhookEvent.created_at < cutoff)
                .where(WebhookEvent.status.in_(TERMINAL_STATUSES))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(f"Cleaned up {result.rowcount} old webhook events")
        return result.rowcount

    async def get_event_stats(self) -> EventStats:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.status, func.count(WebhookEvent.id))
                .group_by(WebhookEvent.status)
            )
            counts = {status: count for status, count in result.all()}

        total = sum(counts.values())
        pending = counts.get(WebhookEventStatus.PENDING, 0)
        failed = counts.get(WebhookEventStatus.FAILED, 0)
        retry_rate = (failed + pending) / total * 100 if total > 0 else 0
        return EventStats(
            total=total,
            pending=pending,
            processing=counts.get(WebhookEventStatus.PROCESSING, 0),
            completed=counts.get(WebhookEventStatus.COMPLETED, 0),
            failed=failed,
            retry_rate=round(retry_rate, 2),
        )
