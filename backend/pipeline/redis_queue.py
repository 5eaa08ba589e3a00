"""
Redis-backed delivery queue.

Layout under ``<queue_name>``:
- ``:jobs``    HASH  job id -> job JSON
- ``:ready``   LIST  job ids ready to run (LPUSH / RPOP)
- ``:delayed`` ZSET  job ids scored by due time (epoch seconds)
- ``:dead``    LIST  permanently failed job ids, newest first, capped
- ``:finished`` ZSET completed and cancelled job ids scored by finish time;
  their records are deleted from ``:jobs`` once past retention

A job is promoted from ``:delayed`` by whichever process wins the ZREM, so
several processes can share one queue.
"""

import asyncio
import time
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from pipeline.delivery_queue import BaseDeliveryQueue, JobState, QueueJob
from pipeline.models import utcnow
from pipeline.settings import settings


class RedisDeliveryQueue(BaseDeliveryQueue):

    name = "redis"

    def __init__(
        self,
        client: redis.Redis,
        queue_name: str = settings.QUEUE_NAME,
        poll_interval: float = settings.QUEUE_POLL_INTERVAL,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._redis = client
        self._poll_interval = poll_interval
        self._jobs_key = f"{queue_name}:jobs"
        self._ready_key = f"{queue_name}:ready"
        self._delayed_key = f"{queue_name}:delayed"
        self._dead_key = f"{queue_name}:dead"
        self._finished_key = f"{queue_name}:finished"
        self._stopping = asyncio.Event()
        self._workers: list[asyncio.Task] = []
        self._promoter: Optional[asyncio.Task] = None

    @classmethod
    def from_url(cls, url: str = settings.REDIS_URL, **kwargs) -> "RedisDeliveryQueue":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    async def close(self) -> None:
        await self._redis.aclose()

    # =========================================================================
    # STORAGE
    # =========================================================================

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = await self._redis.hget(self._jobs_key, job_id)
        return QueueJob.model_validate_json(raw) if raw else None

    async def _save(self, job: QueueJob) -> None:
        await self._redis.hset(self._jobs_key, job.id, job.model_dump_json())

    async def _schedule_retry(self, job: QueueJob, delay: float) -> None:
        await self._save(job)
        await self._redis.zadd(self._delayed_key, {job.id: time.time() + delay})

    async def _dead_letter(self, job: QueueJob) -> None:
        await self._save(job)
        await self._redis.lpush(self._dead_key, job.id)
        overflow = await self._redis.lrange(self._dead_key, self.dead_letter_limit, -1)
        if overflow:
            await self._redis.ltrim(self._dead_key, 0, self.dead_letter_limit - 1)
            await self._redis.hdel(self._jobs_key, *overflow)

    async def _retire(self, job: QueueJob) -> None:
        now = time.time()
        await self._redis.zadd(self._finished_key, {job.id: now})
        expired = await self._redis.zrangebyscore(self._finished_key, 0, now - self.finished_retention)
        if expired:
            await self._redis.zrem(self._finished_key, *expired)
            await self._redis.hdel(self._jobs_key, *expired)

    async def dead_letters(self, limit: int = 100) -> list[QueueJob]:
        job_ids = await self._redis.lrange(self._dead_key, 0, limit - 1)
        jobs = [await self.get_job(job_id) for job_id in job_ids]
        return [j for j in jobs if j is not None]

    # =========================================================================
    # PRODUCER API
    # =========================================================================

    async def enqueue(
        self,
        kind: str,
        data: dict,
        delay: float = 0,
        max_attempts: Optional[int] = None,
    ) -> QueueJob:
        job = self._new_job(kind, data, delay, max_attempts)
        await self._save(job)
        if job.status == JobState.DELAYED:
            await self._redis.zadd(self._delayed_key, {job.id: time.time() + delay})
        else:
            await self._redis.lpush(self._ready_key, job.id)
        self._logger.debug("job_enqueued", job_id=job.id, kind=kind, delay_seconds=delay)
        return job

    async def cancel(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if not job or job.status not in (JobState.WAITING, JobState.DELAYED):
            return False

        removed = await self._redis.zrem(self._delayed_key, job_id)
        removed += await self._redis.lrem(self._ready_key, 0, job_id)
        if not removed:
            # A worker or the promoter already took it
            return False

        job.status = JobState.CANCELLED
        job.finished_at = utcnow()
        await self._save(job)
        await self._retire(job)
        self._logger.info("job_cancelled", job_id=job_id, kind=job.kind)
        return True

    # =========================================================================
    # WORKERS
    # =========================================================================

    async def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"redis-delivery-worker-{n}")
            for n in range(self.max_concurrent)
        ]
        self._promoter = asyncio.create_task(self._promote_due_jobs(), name="redis-delivery-promoter")
        self._logger.info("queue_started", workers=self.max_concurrent)

    async def _promote_due_jobs(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._promote_once()
            except RedisError as e:
                self._logger.warning("queue_poll_failed", loop="promoter", error=f"{type(e).__name__}: {e}")
            await asyncio.sleep(self._poll_interval)

    async def _promote_once(self) -> None:
        due = await self._redis.zrangebyscore(self._delayed_key, 0, time.time())
        for job_id in due:
            if not await self._redis.zrem(self._delayed_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job and job.status == JobState.DELAYED:
                job.status = JobState.WAITING
                await self._save(job)
                await self._redis.lpush(self._ready_key, job_id)

    async def _worker(self, n: int) -> None:
        while not self._stopping.is_set():
            try:
                ran = await self._run_next()
            except RedisError as e:
                self._logger.warning("queue_poll_failed", loop=f"worker-{n}", error=f"{type(e).__name__}: {e}")
                ran = False
            if not ran:
                await asyncio.sleep(self._poll_interval)

    async def _run_next(self) -> bool:
        job_id = await self._redis.rpop(self._ready_key)
        if job_id is None:
            return False
        job = await self.get_job(job_id)
        if job and job.status == JobState.WAITING:
            await self._execute(job)
        return True

    async def drain(self) -> None:
        """Workers finish their current job and exit; queued jobs stay in Redis."""
        self._accepting = False
        self._stopping.set()
        results = await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        for result in results:
            if isinstance(result, Exception):
                self._logger.error("worker_crashed", error=f"{type(result).__name__}: {result}")

        if self._promoter:
            self._promoter.cancel()
            await asyncio.gather(self._promoter, return_exceptions=True)
            self._promoter = None

        pending = await self._redis.llen(self._ready_key)
        delayed = await self._redis.zcard(self._delayed_key)
        self._logger.info("queue_drained", ready_left=pending, delayed_left=delayed)
