"""
Delivery Queue
==============
Bounded-concurrency job queue with per-job retry, exponential backoff and a
dead-letter store. Jobs carry a ``kind`` that routes them to a registered
handler (webhook deliveries, cart reminders).

Completed and cancelled jobs are forgotten once they are older than the
retention window; the dead-letter store keeps only the newest failures.

Two interchangeable backends share the retry logic in ``BaseDeliveryQueue``:
- InMemoryDeliveryQueue: asyncio worker pool, single process
- RedisDeliveryQueue (pipeline.redis_queue): jobs survive restarts, many workers
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

import structlog
from pydantic import BaseModel, Field, computed_field

from pipeline.errors import EventSchemaError, PipelineError, QueueClosedError
from pipeline.models import new_id, utcnow
from pipeline.settings import settings


# =============================================================================
# JOB MODEL
# =============================================================================

class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueJob(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: str
    data: dict
    attempts: int = 0
    max_attempts: int = settings.MAX_ATTEMPTS
    status: JobState = JobState.WAITING
    run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @computed_field
    @property
    def is_retriable(self) -> bool:
        return self.attempts < self.max_attempts


JobHandler = Callable[[QueueJob], Awaitable[None]]


def backoff_delay(attempt: int, delays: Sequence[float] = settings.RETRY_DELAYS) -> float:
    """Delay before the retry that follows failed attempt number ``attempt``."""
    return delays[min(attempt - 1, len(delays) - 1)]


def is_permanent(error: BaseException) -> bool:
    return isinstance(error, PipelineError) and not error.retryable


# =============================================================================
# INTERFACE
# =============================================================================

class IDeliveryQueue(ABC):

    name: str = "abstract"

    @abstractmethod
    def register(self, kind: str, handler: JobHandler) -> None:
        pass

    @abstractmethod
    async def enqueue(
        self,
        kind: str,
        data: dict,
        delay: float = 0,
        max_attempts: Optional[int] = None,
    ) -> QueueJob:
        """Raises QueueClosedError once draining has started."""
        pass

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started. Returns False otherwise."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        pass

    async def get_status(self, job_id: str) -> Optional[JobState]:
        job = await self.get_job(job_id)
        return job.status if job else None

    @abstractmethod
    async def dead_letters(self, limit: int = 100) -> list[QueueJob]:
        pass

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def drain(self) -> None:
        """Stop intake, let ready and in-flight jobs finish, stop workers."""
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# SHARED RETRY LOGIC
# =============================================================================

class BaseDeliveryQueue(IDeliveryQueue):

    def __init__(
        self,
        max_concurrent: int = settings.MAX_CONCURRENT,
        max_attempts: int = settings.MAX_ATTEMPTS,
        retry_delays: Sequence[float] = settings.RETRY_DELAYS,
        finished_retention: float = settings.FINISHED_JOB_RETENTION,
        dead_letter_limit: int = settings.DEAD_LETTER_LIMIT,
    ):
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.finished_retention = finished_retention
        self.dead_letter_limit = dead_letter_limit
        self._handlers: dict[str, JobHandler] = {}
        self._accepting = True
        self._logger = structlog.get_logger().bind(component="delivery_queue", backend=self.name)

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler
        self._logger.debug("handler_registered", kind=kind)

    def _new_job(self, kind: str, data: dict, delay: float, max_attempts: Optional[int]) -> QueueJob:
        if not self._accepting:
            raise QueueClosedError("Delivery queue is draining", context={"kind": kind})
        job = QueueJob(kind=kind, data=data, max_attempts=max_attempts or self.max_attempts)
        if delay > 0:
            job.status = JobState.DELAYED
            job.run_at = utcnow() + timedelta(seconds=delay)
        return job

    @abstractmethod
    async def _save(self, job: QueueJob) -> None:
        pass

    @abstractmethod
    async def _schedule_retry(self, job: QueueJob, delay: float) -> None:
        pass

    @abstractmethod
    async def _dead_letter(self, job: QueueJob) -> None:
        pass

    @abstractmethod
    async def _retire(self, job: QueueJob) -> None:
        """Record a completed or cancelled job and evict those past retention."""
        pass

    async def _execute(self, job: QueueJob) -> None:
        log = self._logger.bind(job_id=job.id, kind=job.kind)
        handler = self._handlers.get(job.kind)

        job.status = JobState.ACTIVE
        job.attempts += 1
        await self._save(job)

        try:
            if handler is None:
                raise EventSchemaError(f"No handler registered for job kind {job.kind}")
            await handler(job)
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"

            if job.is_retriable and not is_permanent(e):
                delay = backoff_delay(job.attempts, self.retry_delays)
                job.status = JobState.DELAYED
                job.run_at = utcnow() + timedelta(seconds=delay)
                await self._schedule_retry(job, delay)
                log.warning("job_retry_scheduled",
                            attempt=job.attempts,
                            delay_seconds=delay,
                            error=job.last_error)
                return

            job.status = JobState.FAILED
            job.finished_at = utcnow()
            await self._dead_letter(job)
            log_method = log.critical if isinstance(e, EventSchemaError) else log.error
            log_method("job_permanently_failed",
                       attempts=job.attempts,
                       error=job.last_error,
                       data=job.data)
            return

        job.status = JobState.COMPLETED
        job.finished_at = utcnow()
        job.last_error = None
        await self._save(job)
        await self._retire(job)
        log.info("job_completed", attempts=job.attempts)


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryDeliveryQueue(BaseDeliveryQueue):
    """asyncio worker pool over an asyncio.Queue of job ids"""

    name = "memory"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: dict[str, QueueJob] = {}
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._timers: dict[str, asyncio.Task] = {}
        self._workers: list[asyncio.Task] = []
        self._dead: list[QueueJob] = []
        self._finished: OrderedDict[str, float] = OrderedDict()  # job id -> monotonic finish time

    async def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"delivery-worker-{n}")
            for n in range(self.max_concurrent)
        ]
        self._logger.info("queue_started", workers=self.max_concurrent)

    async def enqueue(
        self,
        kind: str,
        data: dict,
        delay: float = 0,
        max_attempts: Optional[int] = None,
    ) -> QueueJob:
        job = self._new_job(kind, data, delay, max_attempts)
        self._jobs[job.id] = job
        if job.status == JobState.DELAYED:
            self._start_timer(job.id, delay)
        else:
            self._ready.put_nowait(job.id)
        self._logger.debug("job_enqueued", job_id=job.id, kind=kind, delay_seconds=delay)
        return job

    async def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status not in (JobState.WAITING, JobState.DELAYED):
            return False
        job.status = JobState.CANCELLED
        job.finished_at = utcnow()
        timer = self._timers.pop(job_id, None)
        if timer:
            timer.cancel()
        await self._retire(job)
        self._logger.info("job_cancelled", job_id=job_id, kind=job.kind)
        return True

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(job_id)

    async def dead_letters(self, limit: int = 100) -> list[QueueJob]:
        return list(reversed(self._dead))[:limit]

    async def _save(self, job: QueueJob) -> None:
        self._jobs[job.id] = job

    async def _schedule_retry(self, job: QueueJob, delay: float) -> None:
        self._start_timer(job.id, delay)

    async def _dead_letter(self, job: QueueJob) -> None:
        self._dead.append(job)
        while len(self._dead) > self.dead_letter_limit:
            oldest = self._dead.pop(0)
            self._jobs.pop(oldest.id, None)

    async def _retire(self, job: QueueJob) -> None:
        now = time.monotonic()
        self._finished[job.id] = now
        cutoff = now - self.finished_retention
        while self._finished:
            job_id, finished = next(iter(self._finished.items()))
            if finished > cutoff:
                break
            del self._finished[job_id]
            self._jobs.pop(job_id, None)

    def _start_timer(self, job_id: str, delay: float) -> None:
        timer = asyncio.create_task(self._release_later(job_id, delay))
        self._timers[job_id] = timer

        def _forget(task: asyncio.Task) -> None:
            if self._timers.get(job_id) is task:
                del self._timers[job_id]

        timer.add_done_callback(_forget)

    async def _release_later(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        job = self._jobs.get(job_id)
        if job and job.status == JobState.DELAYED:
            job.status = JobState.WAITING
            self._ready.put_nowait(job_id)

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._ready.get()
            try:
                job = self._jobs.get(job_id)
                if job and job.status == JobState.WAITING:
                    await self._execute(job)
            finally:
                self._ready.task_done()

    async def drain(self) -> None:
        self._accepting = False
        if self._workers:
            await self._ready.join()

        dropped = list(self._timers)
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        if dropped:
            self._logger.warning("delayed_jobs_dropped", count=len(dropped), job_ids=dropped)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._logger.info("queue_drained")
