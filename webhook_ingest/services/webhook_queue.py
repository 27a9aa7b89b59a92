import logging
import time
from typing import Optional
from redis.asyncio import Redis
from webhook_ingest.schemas.webhook import WebhookJob

logger = logging.getLogger(__name__)

# KEYS[1] = job hash, KEYS[2] = scheduled zset
# ARGV[1] = job id, ARGV[2] = job data, ARGV[3] = attempts, ARGV[4] = now (ms)
LUA_ENQUEUE_JOB = """
if redis.call('HSETNX', KEYS[1], 'status', 'waiting') == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'data', ARGV[2], 'attempts', ARGV[3], 'created_at', ARGV[4])
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[1])
return 1
"""


def job_key_for(provider: str, event_id: str, order_id: Optional[str], payment_id: Optional[str]) -> str:
    """
    Job-level dedup key. Payment events use orderId:paymentId, independent of
    the ledger's (provider, event_id); anything else falls back to provider:eventId.
    """
    if order_id and payment_id:
        return f"{order_id}:{payment_id}"
    return f"{provider}:{event_id}"


class WebhookQueue:
    """
    Durable job queue on Redis.

    Key layout, all under {name}:
      {name}:job:{job_id}   hash  status, data, attempts, last_error, timestamps
      {name}:scheduled      zset  job_id -> time (ms) the job becomes due
      {name}:active         zset  job_id -> time (ms) a worker claimed it
      {name}:completed      zset  job_id -> finish time, pruned to keep_completed
      {name}:failed         zset  job_id -> finish time, pruned to keep_failed

    A job hash exists for as long as the job is retained, which is what makes
    enqueue idempotent per job id.
    """

    def __init__(self, redis: Redis, name: str = "webhook-processing", max_attempts: int = 3,
                 backoff_ms: int = 2000, keep_completed: int = 100, keep_failed: int = 50):
        self.redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

    def _job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    @property
    def scheduled_key(self) -> str:
        return f"{self.name}:scheduled"

    @property
    def active_key(self) -> str:
        return f"{self.name}:active"

    @property
    def completed_key(self) -> str:
        return f"{self.name}:completed"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def _decode(value) -> str:
        return value.decode() if isinstance(value, bytes) else value

    async def enqueue(self, job: WebhookJob) -> bool:
        """Add the job unless one with the same id is retained. Returns True if added."""
        added = await self.redis.eval(
            LUA_ENQUEUE_JOB, 2, self._job_key(job.job_id), self.scheduled_key,
            job.job_id, job.model_dump_json(), job.attempts, self._now_ms())
        if added != 1:
            logger.info(f"Webhook job already exists for {job.job_id}")
            return False
        logger.info(f"Enqueued webhook job {job.job_id} for event {job.event_id}")
        return True

    async def claim_next(self) -> Optional[WebhookJob]:
        """
        Pop the earliest due job. ZREM decides the winner when several
        workers see the same job id.
        """
        now = self._now_ms()
        while True:
            due = await self.redis.zrangebyscore(self.scheduled_key, "-inf", now, start=0, num=1)
            if not due:
                return None
            job_id = self._decode(due[0])
            if await self.redis.zrem(self.scheduled_key, job_id) == 0:
                # another worker took it
                continue
            job_key = self._job_key(job_id)
            raw = await self.redis.hget(job_key, "data")
            if raw is None:
                logger.warning(f"Webhook job {job_id} has no data, dropping")
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(job_key, "attempts", 1)
                pipe.hset(job_key, mapping={"status": "active", "started_at": now})
                pipe.zadd(self.active_key, {job_id: now})
                attempts, _, _ = await pipe.execute()
            job = WebhookJob.model_validate_json(raw)
            job.attempts = int(attempts)
            return job

    async def complete(self, job: WebhookJob):
        now = self._now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.job_id), mapping={"status": "completed", "finished_at": now})
            pipe.zrem(self.active_key, job.job_id)
            pipe.zadd(self.completed_key, {job.job_id: now})
            await pipe.execute()
        logger.info(f"Webhook job {job.job_id} completed successfully")
        await self._prune(self.completed_key, self.keep_completed)

    async def fail(self, job: WebhookJob, error: str, retry: bool = True) -> bool:
        """
        Record a failed attempt. Reschedules with exponential backoff while
        attempts remain and `retry` is set; returns True if rescheduled.
        """
        job_key = self._job_key(job.job_id)
        now = self._now_ms()
        if retry and job.attempts < self.max_attempts:
            delay = self.backoff_ms * 2 ** (job.attempts - 1)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(job_key, mapping={"status": "delayed", "last_error": error})
                pipe.zrem(self.active_key, job.job_id)
                pipe.zadd(self.scheduled_key, {job.job_id: now + delay})
                await pipe.execute()
            logger.warning(
                f"Webhook job {job.job_id} failed (attempt {job.attempts}/{self.max_attempts}), retrying in {delay}ms: {error}")
            return True

        await self._move_to_failed(job.job_id, error, now)
        logger.error(f"Webhook job {job.job_id} failed after {job.attempts} attempts: {error}")
        await self._prune(self.failed_key, self.keep_failed)
        return False

    async def release_stale(self, stale_after_ms: int) -> int:
        """
        Fail jobs that stayed active longer than `stale_after_ms`, i.e. whose
        worker died. Their ledger rows are recovered by the ledger reaper.
        """
        now = self._now_ms()
        stale_ids = await self.redis.zrangebyscore(self.active_key, "-inf", now - stale_after_ms)
        released = 0
        for job_id in stale_ids:
            job_id = self._decode(job_id)
            # a worker finishing right now wins
            if await self.redis.zrem(self.active_key, job_id) == 0:
                continue
            await self._move_to_failed(job_id, "worker lost", now)
            released += 1
        if released:
            logger.warning(f"Moved {released} stale active webhook jobs to failed")
            await self._prune(self.failed_key, self.keep_failed)
        return released

    async def get_status(self, job_id: str) -> Optional[str]:
        status = await self.redis.hget(self._job_key(job_id), "status")
        if status is None:
            return None
        return self._decode(status)

    async def _move_to_failed(self, job_id: str, error: str, now: int):
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={"status": "failed", "last_error": error, "finished_at": now})
            pipe.zrem(self.active_key, job_id)
            pipe.zadd(self.failed_key, {job_id: now})
            await pipe.execute()

    async def _prune(self, finished_key: str, keep: int):
        """Drop all but the newest `keep` finished jobs, together with their hashes."""
        excess = await self.redis.zcard(finished_key) - keep
        if excess <= 0:
            return
        old_ids = await self.redis.zrange(finished_key, 0, excess - 1)
        if not old_ids:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            for job_id in old_ids:
                pipe.delete(self._job_key(self._decode(job_id)))
            pipe.zrem(finished_key, *old_ids)
            await pipe.execute()
        logger.debug(f"Pruned {len(old_ids)} jobs from {finished_key}")
