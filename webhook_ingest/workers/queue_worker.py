import asyncio
import logging
from typing import List, Optional
from webhook_ingest.schemas.webhook import WebhookJob
from webhook_ingest.services.webhook_queue import WebhookQueue
from webhook_ingest.services.webhooks import ProcessOutcome, WebhookService

logger = logging.getLogger(__name__)


class WebhookQueueWorker:
    """
    Pool of `concurrency` consumers on the webhook job queue.

    What if a worker crashes mid-job?
    The job stays in the active set and its ledger row stays PROCESSING.
    Once stale, the retry worker moves the job to failed and re-drives the
    ledger row from the stored payload.
    """

    def __init__(self, queue: WebhookQueue, service: WebhookService, concurrency: int = 5,
                 poll_interval: float = 0.5):
        self.queue = queue
        self.service = service
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def process_next(self) -> Optional[ProcessOutcome]:
        """Run one due job, if any. Returns the ledger outcome or None when idle."""
        job = await self.queue.claim_next()
        if job is None:
            return None
        return await self._run_job(job)

    async def _run_job(self, job: WebhookJob) -> ProcessOutcome:
        record = await self.service.ledger.get_event(job.record_id)
        if record is None:
            # ledger row already reaped, nothing left to guard the effect
            await self.queue.fail(job, "ledger record missing", retry=False)
            return ProcessOutcome.FAILED

        try:
            outcome = await self.service.redrive(record)
        except Exception as e:
            logger.error(f"Webhook job {job.job_id} crashed: {e}", exc_info=True)
            await self.queue.fail(job, str(e))
            return ProcessOutcome.RETRY_SCHEDULED

        if outcome in (ProcessOutcome.COMPLETED, ProcessOutcome.SKIPPED):
            await self.queue.complete(job)
        elif outcome == ProcessOutcome.FAILED:
            await self.queue.fail(job, "ledger marked the event failed", retry=False)
        else:
            await self.queue.fail(job, f"processing {outcome.value.lower()}")
        return outcome

    async def _consume(self, worker_no: int):
        while not self._stopping.is_set():
            try:
                outcome = await self.process_next()
            except Exception as e:
                # queue or ledger unavailable, back off and keep the consumer alive
                logger.error(f"Webhook worker {worker_no} error: {e}", exc_info=True)
                outcome = None
            if outcome is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    def start(self):
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._consume(n)) for n in range(self.concurrency)]
        logger.info(f"Started {self.concurrency} webhook queue workers on {self.queue.name}")

    async def stop(self):
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
