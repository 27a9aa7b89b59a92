import uuid
from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import update
from webhook_ingest.core.exceptions import DuplicateEventError, WebhookEventNotFoundError
from webhook_ingest.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from webhook_ingest.schemas.webhook import NewWebhookEvent
from webhook_ingest.services.idempotency import STALE_PROCESSING_ERROR, IdempotencyLedger

PROVIDER = "razorpay"


def new_event(event_id: str = "evt_1") -> NewWebhookEvent:
    return NewWebhookEvent(
        provider=PROVIDER,
        event_id=event_id,
        event_type="payment.captured",
        signature="deadbeef",
        payload='{"id": "%s", "event": "payment.captured"}' % event_id,
    )


async def age_row(session_factory, record_id, **columns):
    """Backdate timestamp columns of a ledger row."""
    async with session_factory() as db:
        await db.execute(
            update(WebhookEvent).where(WebhookEvent.id == record_id).values(**columns))
        await db.commit()


def trail_time(event: WebhookEvent) -> datetime:
    # sqlite hands datetimes back naive
    return datetime.fromisoformat(event.error_trail[-1]["at"]).replace(tzinfo=None)


async def test_create_event_stores_pending_row(ledger):
    record_id = await ledger.create_event(new_event())
    event = await ledger.get_event(record_id)
    assert event.status == WebhookEventStatus.PENDING
    assert event.retry_count == 0
    assert event.max_retries == 3
    assert event.payload == '{"id": "evt_1", "event": "payment.captured"}'
    assert event.error_trail == []


async def test_duplicate_event_is_rejected(ledger):
    await ledger.create_event(new_event())
    with pytest.raises(DuplicateEventError) as exc:
        await ledger.create_event(new_event())
    assert exc.value.event_id == "evt_1"
    # another provider may reuse the id
    await ledger.create_event(new_event().model_copy(update={"provider": "stripe"}))


async def test_is_processed_only_for_terminal_rows(ledger):
    assert not await ledger.is_processed(PROVIDER, "evt_1")
    done = await ledger.create_event(new_event("evt_1"))
    dead = await ledger.create_event(new_event("evt_2"))
    assert not await ledger.is_processed(PROVIDER, "evt_1")

    await ledger.mark_processing(done)
    assert not await ledger.is_processed(PROVIDER, "evt_1")
    await ledger.mark_completed(done)
    await ledger.mark_failed(dead, "boom", should_retry=False)

    assert await ledger.is_processed(PROVIDER, "evt_1")
    assert await ledger.is_processed(PROVIDER, "evt_2")


async def test_only_one_caller_claims_a_row(ledger):
    record_id = await ledger.create_event(new_event())
    assert await ledger.mark_processing(record_id)
    assert not await ledger.mark_processing(record_id)
    assert not await ledger.mark_processing(record_id, stale_after=timedelta(minutes=5))
    event = await ledger.get_event(record_id)
    assert event.status == WebhookEventStatus.PROCESSING
    assert event.processed_at is not None


async def test_stale_processing_row_can_be_reclaimed(ledger, session_factory):
    record_id = await ledger.create_event(new_event())
    await ledger.mark_processing(record_id)
    await age_row(session_factory, record_id,
                  processed_at=datetime.now(timezone.utc) - timedelta(minutes=10))
    assert not await ledger.mark_processing(record_id)
    assert await ledger.mark_processing(record_id, stale_after=timedelta(minutes=5))


async def test_unknown_record_raises(ledger):
    missing = uuid.uuid4()
    with pytest.raises(WebhookEventNotFoundError):
        await ledger.mark_processing(missing)
    with pytest.raises(WebhookEventNotFoundError):
        await ledger.mark_completed(missing)
    with pytest.raises(WebhookEventNotFoundError):
        await ledger.mark_failed(missing, "boom")


async def test_failures_back_off_exponentially(ledger):
    """
    Test: retry delay doubles with every failed attempt
    """
    record_id = await ledger.create_event(new_event())
    for attempt, delay_ms in ((1, 5000), (2, 10000)):
        await ledger.mark_processing(record_id)
        status = await ledger.mark_failed(record_id, f"attempt {attempt} failed")
        assert status == WebhookEventStatus.PENDING

        event = await ledger.get_event(record_id)
        assert event.retry_count == attempt
        assert event.last_error == f"attempt {attempt} failed"
        assert event.next_retry_at - trail_time(event) == timedelta(milliseconds=delay_ms)


async def test_retries_are_bounded(ledger):
    """
    Test: after max_retries failures the row is FAILED for good
    """
    record_id = await ledger.create_event(new_event())
    statuses = []
    for attempt in range(1, 4):
        await ledger.mark_processing(record_id)
        statuses.append(await ledger.mark_failed(record_id, f"error {attempt}"))

    assert statuses == [WebhookEventStatus.PENDING, WebhookEventStatus.PENDING, WebhookEventStatus.FAILED]
    event = await ledger.get_event(record_id)
    assert event.status == WebhookEventStatus.FAILED
    assert event.retry_count == 3
    assert event.next_retry_at is None
    assert [entry["error"] for entry in event.error_trail] == ["error 1", "error 2", "error 3"]

    # a late failure report changes nothing
    assert await ledger.mark_failed(record_id, "late") == WebhookEventStatus.FAILED
    assert (await ledger.get_event(record_id)).retry_count == 3
    assert not await ledger.mark_processing(record_id, stale_after=timedelta(seconds=0))


async def test_non_retryable_failure_is_final(ledger):
    record_id = await ledger.create_event(new_event())
    await ledger.mark_processing(record_id)
    assert await ledger.mark_failed(record_id, "bad transition", should_retry=False) == WebhookEventStatus.FAILED
    event = await ledger.get_event(record_id)
    assert event.retry_count == 1


async def test_completed_row_is_never_failed(ledger):
    record_id = await ledger.create_event(new_event())
    await ledger.mark_processing(record_id)
    await ledger.mark_completed(record_id)
    assert await ledger.mark_failed(record_id, "late") == WebhookEventStatus.COMPLETED
    await ledger.mark_completed(record_id)
    event = await ledger.get_event(record_id)
    assert event.status == WebhookEventStatus.COMPLETED
    assert event.retry_count == 0


async def test_pending_retries_are_due_rows_only(session_factory):
    ledger = IdempotencyLedger(session_factory, max_retries=3, retry_delay_ms=0)
    due = await ledger.create_event(new_event("evt_due"))
    fresh = await ledger.create_event(new_event("evt_fresh"))
    await ledger.mark_processing(due)
    await ledger.mark_failed(due, "boom")

    retries = await ledger.get_pending_retries()
    assert [event.id for event in retries] == [due]
    assert fresh not in [event.id for event in retries]

    slow = IdempotencyLedger(session_factory, max_retries=3, retry_delay_ms=60000)
    later = await slow.create_event(new_event("evt_later"))
    await slow.mark_processing(later)
    await slow.mark_failed(later, "boom")
    assert later not in [event.id for event in await slow.get_pending_retries()]


async def test_release_stale_recovers_abandoned_rows(ledger, session_factory):
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=10)
    stuck = await ledger.create_event(new_event("evt_stuck"))
    await ledger.mark_processing(stuck)
    await age_row(session_factory, stuck, processed_at=long_ago)
    orphan = await ledger.create_event(new_event("evt_orphan"))
    await age_row(session_factory, orphan, created_at=long_ago)
    busy = await ledger.create_event(new_event("evt_busy"))
    await ledger.mark_processing(busy)

    released = await ledger.release_stale(timedelta(minutes=5))
    assert released == 2

    stuck_event = await ledger.get_event(stuck)
    assert stuck_event.status == WebhookEventStatus.PENDING
    assert stuck_event.retry_count == 1
    assert stuck_event.last_error == STALE_PROCESSING_ERROR
    assert (await ledger.get_event(orphan)).next_retry_at is not None
    assert (await ledger.get_event(busy)).status == WebhookEventStatus.PROCESSING


async def test_cleanup_removes_old_terminal_rows(ledger, session_factory):
    long_ago = datetime.now(timezone.utc) - timedelta(days=31)
    old_done = await ledger.create_event(new_event("evt_old_done"))
    await ledger.mark_completed(old_done)
    old_pending = await ledger.create_event(new_event("evt_old_pending"))
    new_done = await ledger.create_event(new_event("evt_new_done"))
    await ledger.mark_completed(new_done)
    for record_id in (old_done, old_pending):
        await age_row(session_factory, record_id, created_at=long_ago)

    assert await ledger.cleanup_old_events(retention_days=30) == 1
    assert await ledger.get_event(old_done) is None
    assert await ledger.get_event(old_pending) is not None
    assert await ledger.get_event(new_done) is not None


async def test_event_stats(ledger):
    empty = await ledger.get_event_stats()
    assert empty.total == 0
    assert empty.retry_rate == 0

    ids = [await ledger.create_event(new_event(f"evt_{n}")) for n in range(4)]
    await ledger.mark_completed(ids[0])
    await ledger.mark_completed(ids[1])
    await ledger.mark_failed(ids[2], "boom", should_retry=False)
    await ledger.mark_processing(ids[3])

    stats = await ledger.get_event_stats()
    assert (stats.total, stats.pending, stats.processing, stats.completed, stats.failed) == (4, 0, 1, 2, 1)
    assert stats.retry_rate == 25.0


class ReclaimingLedger(IdempotencyLedger):
    """A redelivery re-claims each stale row just before the reaper fails it."""

    reclaimed = None

    async def mark_failed(self, record_id, error, should_retry=True, stale_before=None):
        if stale_before is not None:
            self.reclaimed = await self.mark_processing(record_id, stale_after=timedelta(minutes=5))
        return await super().mark_failed(record_id, error, should_retry=should_retry, stale_before=stale_before)


async def test_release_stale_leaves_reclaimed_row_alone(session_factory):
    ledger = ReclaimingLedger(session_factory, max_retries=3, retry_delay_ms=5000)
    record_id = await ledger.create_event(new_event("evt_reclaimed"))
    await ledger.mark_processing(record_id)
    await age_row(session_factory, record_id,
                  processed_at=datetime.now(timezone.utc) - timedelta(minutes=10))

    await ledger.release_stale(timedelta(minutes=5))

    assert ledger.reclaimed is True
    event = await ledger.get_event(record_id)
    assert event.status == WebhookEventStatus.PROCESSING
    assert event.retry_count == 0
    assert event.error_trail == []
