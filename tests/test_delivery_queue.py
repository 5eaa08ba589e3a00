import asyncio

import pytest

from pipeline.delivery_queue import InMemoryDeliveryQueue, JobState, backoff_delay
from pipeline.errors import DeliveryFailedError, EventSchemaError, QueueClosedError
from pipeline.models import utcnow


@pytest.fixture
async def queue():
    q = InMemoryDeliveryQueue(max_concurrent=2, retry_delays=(0.01, 0.02, 0.03))
    await q.start()
    yield q
    await q.drain()


def test_backoff_schedule():
    delays = (5, 15, 30)
    assert [backoff_delay(n, delays) for n in (1, 2, 3, 4)] == [5, 15, 30, 30]


async def test_job_runs_once(queue, eventually):
    seen = []

    async def handler(job):
        seen.append(job.data["n"])

    queue.register("noop", handler)
    job = await queue.enqueue("noop", {"n": 1})

    await eventually(lambda: seen == [1])
    await eventually(lambda: job.status == JobState.COMPLETED)
    assert job.attempts == 1


async def test_transient_failure_retried_until_bound(queue, eventually):
    attempts = []

    async def flaky(job):
        attempts.append(job.attempts)
        raise DeliveryFailedError("503 from subscriber")

    queue.register("flaky", flaky)
    job = await queue.enqueue("flaky", {})

    await eventually(lambda: job.status == JobState.FAILED)
    await asyncio.sleep(0.1)
    assert attempts == [1, 2, 3]
    assert [j.id for j in await queue.dead_letters()] == [job.id]
    assert "503 from subscriber" in job.last_error


async def test_retry_delays_strictly_increase(eventually):
    configured = (0.01, 0.03, 0.06)
    q = InMemoryDeliveryQueue(max_concurrent=1, max_attempts=4, retry_delays=configured)
    scheduled_for = []
    failed_at = []

    async def always_failing(job):
        scheduled_for.append(job.run_at)
        failed_at.append(utcnow())
        raise DeliveryFailedError("subscriber down")

    q.register("down", always_failing)
    await q.start()
    job = await q.enqueue("down", {})
    await eventually(lambda: job.status == JobState.FAILED)
    await q.drain()

    delays = [(scheduled_for[n + 1] - failed_at[n]).total_seconds() for n in range(3)]
    assert job.attempts == 4
    assert delays[0] < delays[1] < delays[2]
    assert all(actual >= expected for actual, expected in zip(delays, configured))


async def test_recovers_after_transient_failure(queue, eventually):
    calls = []

    async def once_flaky(job):
        calls.append(job.attempts)
        if job.attempts == 1:
            raise ConnectionError("reset")

    queue.register("once", once_flaky)
    job = await queue.enqueue("once", {})

    await eventually(lambda: job.status == JobState.COMPLETED)
    assert calls == [1, 2]
    assert job.last_error is None
    assert await queue.dead_letters() == []


async def test_schema_error_never_retried(queue, eventually):
    calls = []

    async def broken(job):
        calls.append(job.attempts)
        raise EventSchemaError("bad resource")

    queue.register("broken", broken)
    job = await queue.enqueue("broken", {})

    await eventually(lambda: job.status == JobState.FAILED)
    await asyncio.sleep(0.05)
    assert calls == [1]


async def test_unregistered_kind_dead_letters(queue, eventually):
    job = await queue.enqueue("unknown.kind", {})

    await eventually(lambda: job.status == JobState.FAILED)
    assert job.attempts == 1


async def test_max_attempts_override(queue, eventually):
    calls = []

    async def failing(job):
        calls.append(job.attempts)
        raise DeliveryFailedError("down")

    queue.register("single", failing)
    job = await queue.enqueue("single", {}, max_attempts=1)

    await eventually(lambda: job.status == JobState.FAILED)
    assert calls == [1]


async def test_cancel_delayed_job(queue):
    ran = []

    async def handler(job):
        ran.append(job.id)

    queue.register("later", handler)
    job = await queue.enqueue("later", {}, delay=0.05)
    assert job.status == JobState.DELAYED

    assert await queue.cancel(job.id) is True
    assert await queue.cancel(job.id) is False
    await asyncio.sleep(0.1)

    assert ran == []
    assert await queue.get_status(job.id) == JobState.CANCELLED


async def test_cannot_cancel_finished_job(queue, eventually):
    async def handler(job):
        pass

    queue.register("quick", handler)
    job = await queue.enqueue("quick", {})
    await eventually(lambda: job.status == JobState.COMPLETED)

    assert await queue.cancel(job.id) is False
    assert await queue.cancel("no-such-job") is False


async def test_concurrency_is_bounded(queue, eventually):
    running = 0
    peak = 0
    done = []

    async def slow(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        done.append(job.id)

    queue.register("slow", slow)
    for _ in range(6):
        await queue.enqueue("slow", {})

    await eventually(lambda: len(done) == 6)
    assert peak == 2


async def test_drain_finishes_ready_jobs_and_closes_intake():
    q = InMemoryDeliveryQueue(max_concurrent=1, retry_delays=(0.01,))
    done = []

    async def handler(job):
        await asyncio.sleep(0.01)
        done.append(job.id)

    q.register("work", handler)
    await q.start()
    jobs = [await q.enqueue("work", {}) for _ in range(3)]
    delayed = await q.enqueue("work", {}, delay=10)

    await q.drain()

    assert done == [j.id for j in jobs]
    assert delayed.id not in done
    with pytest.raises(QueueClosedError):
        await q.enqueue("work", {})


async def test_drain_waits_for_running_job():
    q = InMemoryDeliveryQueue(max_concurrent=1)
    started = asyncio.Event()
    finished = []

    async def slow(job):
        started.set()
        await asyncio.sleep(0.05)
        finished.append(job.id)

    q.register("slow", slow)
    await q.start()
    job = await q.enqueue("slow", {})
    await started.wait()

    await q.drain()

    assert finished == [job.id]
    assert job.status == JobState.COMPLETED


async def test_finished_jobs_forgotten_after_retention(eventually):
    q = InMemoryDeliveryQueue(max_concurrent=2, finished_retention=0.05)

    async def handler(job):
        pass

    q.register("noop", handler)
    await q.start()
    first = await q.enqueue("noop", {})
    await eventually(lambda: first.status == JobState.COMPLETED)
    cancelled = await q.enqueue("noop", {}, delay=10)
    await q.cancel(cancelled.id)
    assert await q.get_job(first.id) is first

    await asyncio.sleep(0.1)
    second = await q.enqueue("noop", {})
    await eventually(lambda: second.status == JobState.COMPLETED)
    await q.drain()

    assert await q.get_job(first.id) is None
    assert await q.get_job(cancelled.id) is None
    assert await q.get_job(second.id) is second


async def test_dead_letter_store_is_capped(eventually):
    q = InMemoryDeliveryQueue(max_concurrent=1, dead_letter_limit=2)

    async def failing(job):
        raise DeliveryFailedError("down")

    q.register("down", failing)
    await q.start()
    jobs = [await q.enqueue("down", {}, max_attempts=1) for _ in range(3)]
    await eventually(lambda: all(j.status == JobState.FAILED for j in jobs))
    await q.drain()

    assert [j.id for j in await q.dead_letters()] == [jobs[2].id, jobs[1].id]
    assert await q.get_job(jobs[0].id) is None
