"""Redis-backed counter store and task queue tests."""

import asyncio

import pytest

from idphoto.queue import BackoffOptions, EnqueueOptions, JobState, RedisTaskQueue
from idphoto.queue.task_queue import LIVE_STATES, STALLED_REASON, BackoffType
from idphoto.services.rate_limiter import CounterIncrement, ModelRateLimits, RateLimiter
from idphoto.services.rate_limiter import RedisCounterStore

pytestmark = pytest.mark.integration


class FakeClock:
    def __init__(self, now: float = 1736942430.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_counter_store_increments_with_ttl(redis_client):
    store = RedisCounterStore(redis_client)

    assert await store.get("ratelimit:m:rpm:1") == 0
    assert await store.ttl("ratelimit:m:rpm:1") == 0

    await store.increment(
        [
            CounterIncrement("ratelimit:m:rpm:1", 1, 120),
            CounterIncrement("ratelimit:m:tpm:1", 1500, 120),
        ]
    )
    await store.increment([CounterIncrement("ratelimit:m:rpm:1", 1, 120)])

    assert await store.get("ratelimit:m:rpm:1") == 2
    assert await store.get("ratelimit:m:tpm:1") == 1500
    assert 0 < await store.ttl("ratelimit:m:rpm:1") <= 120


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(redis_client):
    limiter = RateLimiter(
        counter_store=RedisCounterStore(redis_client),
        model_limits={
            "primary": ModelRateLimits(rpm=1000, tpm=10_000_000, rpd=10_000),
            "fallback": ModelRateLimits(rpm=1000, tpm=10_000_000, rpd=10_000),
        },
        primary_model="primary",
        fallback_model="fallback",
    )

    await asyncio.gather(*(limiter.record_request("primary", 100) for _ in range(50)))

    status = await limiter.get_model_status("primary")
    assert status.rpm.current == 50
    assert status.tpm.current == 5000
    assert status.rpd.current == 50


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(redis_client, clock) -> RedisTaskQueue:
    return RedisTaskQueue(redis_client, name="generation-test", lock_seconds=30, clock=clock)


OPTIONS = EnqueueOptions(attempts=2, backoff=BackoffOptions(BackoffType.EXPONENTIAL, 5.0))


@pytest.mark.asyncio
async def test_enqueue_deduplicates_by_job_id(queue):
    assert await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS) is True
    assert await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS) is False

    assert await queue.list_job_ids([JobState.WAITING]) == {"job-1"}
    job = await queue.get_job("job-1")
    assert job.payload == {"jobId": "job-1"}
    assert job.max_attempts == 2
    assert job.state == JobState.WAITING


@pytest.mark.asyncio
async def test_concurrent_enqueue_collapses(queue):
    results = await asyncio.gather(
        *(queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS) for _ in range(5))
    )

    assert results.count(True) == 1
    assert await queue.client.llen(queue.waiting_key) == 1


@pytest.mark.asyncio
async def test_reserve_complete(queue):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)

    job = await queue.reserve(timeout=1)

    assert job.id == "job-1"
    assert job.state == JobState.ACTIVE
    assert job.attempt == 1
    assert await queue.list_job_ids([JobState.ACTIVE]) == {"job-1"}
    assert await queue.extend_lock("job-1") is True

    await queue.complete("job-1")

    assert await queue.list_job_ids(LIVE_STATES) == set()
    assert await queue.get_job("job-1") is None


@pytest.mark.asyncio
async def test_reserve_in_fifo_order(queue):
    for job_id in ("a", "b", "c"):
        await queue.enqueue(job_id, {"jobId": job_id}, OPTIONS)

    reserved = [(await queue.reserve(timeout=1)).id for _ in range(3)]

    assert reserved == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_failed_attempt_is_delayed_then_exhausted(queue, clock):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)
    await queue.reserve(timeout=1)

    assert await queue.fail("job-1", "503 Service Unavailable") is True
    assert await queue.list_job_ids([JobState.DELAYED]) == {"job-1"}

    # Not due yet
    assert await queue.reserve(timeout=0.1) is None

    clock.now += 5
    job = await queue.reserve(timeout=1)
    assert job.id == "job-1"
    assert job.attempt == 2
    assert job.is_final_attempt is True

    assert await queue.fail("job-1", "503 Service Unavailable") is False

    failed = await queue.get_job("job-1")
    assert failed.state == JobState.FAILED
    assert failed.failed_reason == "503 Service Unavailable"
    assert await queue.list_job_ids(LIVE_STATES) == set()
    assert 0 < await queue.client.ttl(queue._job_key("job-1"))


@pytest.mark.asyncio
async def test_fail_without_retry(queue):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)
    await queue.reserve(timeout=1)

    assert await queue.fail("job-1", "Uploaded image not found", retry=False) is False
    assert (await queue.get_job("job-1")).state == JobState.FAILED


@pytest.mark.asyncio
async def test_stalled_job_returns_to_waiting(queue, clock):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)
    await queue.reserve(timeout=1)

    # Worker died: its lock expired
    await queue.client.delete(queue._lock_key("job-1"))

    # First sighting only marks the job
    assert await queue.recover_stalled() == 0
    assert await queue.list_job_ids([JobState.ACTIVE]) == {"job-1"}

    clock.now += queue.lock_seconds
    assert await queue.recover_stalled() == 1
    assert await queue.list_job_ids([JobState.WAITING]) == {"job-1"}
    assert await queue.recover_stalled() == 0

    job = await queue.reserve(timeout=1)
    assert job.attempt == 2
    assert job.is_final_attempt is True


@pytest.mark.asyncio
async def test_job_between_move_and_lock_is_not_handed_out_twice(queue, clock):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)
    get_job = queue.get_job
    swept = []

    async def get_job_with_concurrent_sweep(job_id):
        # Another worker's stalled check runs before this reserve takes the lock
        swept.append(await queue.recover_stalled())
        swept.append(await queue.recover_stalled())
        return await get_job(job_id)

    queue.get_job = get_job_with_concurrent_sweep
    first = await queue.reserve(timeout=1)
    queue.get_job = get_job

    assert first.id == "job-1"
    assert swept == [0, 0]
    assert await queue.reserve(timeout=0.1) is None

    clock.now += queue.lock_seconds
    assert await queue.recover_stalled() == 0
    assert await queue.list_job_ids([JobState.ACTIVE]) == {"job-1"}
    assert await queue.client.hlen(queue.stalled_key) == 0


@pytest.mark.asyncio
async def test_repeatedly_stalled_job_fails_when_attempts_run_out(queue, clock):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)

    for _ in range(OPTIONS.attempts):
        await queue.reserve(timeout=1)
        await queue.client.delete(queue._lock_key("job-1"))
        await queue.recover_stalled()
        clock.now += queue.lock_seconds
        await queue.recover_stalled()

    job = await queue.get_job("job-1")
    assert job.state == JobState.FAILED
    assert job.attempts_made == 2
    assert job.failed_reason == STALLED_REASON
    assert await queue.list_job_ids(LIVE_STATES) == set()
    assert await queue.reserve(timeout=0.1) is None


@pytest.mark.asyncio
async def test_paused_queue_hands_out_nothing(queue):
    await queue.enqueue("job-1", {"jobId": "job-1"}, OPTIONS)
    await queue.pause()

    assert await queue.is_paused() is True
    assert await queue.reserve(timeout=0.01) is None
    assert await queue.list_job_ids([JobState.WAITING]) == set()
    assert await queue.list_job_ids([JobState.PAUSED]) == {"job-1"}

    await queue.resume()
    assert (await queue.reserve(timeout=1)).id == "job-1"
