import asyncio
import logging
from datetime import timedelta
from typing import Optional
from webhook_ingest.services.webhooks import ProcessOutcome, WebhookService

logger = logging.getLogger(__name__)


class WebhookRetryWorker:
    """
    Periodic re-driver for the idempotency ledger:
    releases stale rows and queue jobs, retries due PENDING rows and prunes old
    terminal rows.
    """

    def __init__(self, service: WebhookService, interval_seconds: float = 30,
                 stale_after: timedelta = timedelta(minutes=5), retention_days: int = 30,
                 cleanup_every: int = 120, batch_size: int = 100):
        self.service = service
        self.ledger = service.ledger
        self.queue = service.queue
        self.interval_seconds = interval_seconds
        self.stale_after = stale_after
        self.retention_days = retention_days
        self.cleanup_every = cleanup_every
        self.batch_size = batch_size
        self._ticks = 0
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """One scan. Returns how many events completed."""
        await self.ledger.release_stale(self.stale_after)
        if self.queue is not None:
            await self.queue.release_stale(int(self.stale_after.total_seconds() * 1000))

        completed = 0
        for record in await self.ledger.get_pending_retries(limit=self.batch_size):
            logger.info(
                f"Retrying webhook event {record.id} ({record.event_id}), attempt {record.retry_count + 1}/{record.max_retries}")
            outcome = await self.service.redrive(record)
            if outcome == ProcessOutcome.COMPLETED:
                completed += 1

        self._ticks += 1
        if self._ticks % self.cleanup_every == 0:
            await self.ledger.cleanup_old_events(self.retention_days)
        return completed

    async def run(self):
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Webhook retry scan failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self):
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self):
        self._stopping.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
