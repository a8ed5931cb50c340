"""Redis-backed task queue with per-job dedup, attempts and backoff.

Delivery is at-least-once. Layout under ``queue:{name}``:
- ``job:{id}``: hash with payload, attempts, backoff and current state
- ``waiting``: list of ids ready to run (pushed left, popped right)
- ``active``: list of ids handed to a worker
- ``delayed``: sorted set of ids scored by the epoch time they become due
- ``lock:{id}``: expiring key held while a worker processes the job
- ``paused``: flag; nothing is handed out while it is set
- ``stalled``: hash of active ids seen without a lock, to the epoch time first seen

A job's id is its dedup key: enqueueing an id that is already tracked is a
no-op, so concurrent submissions of the same job collapse into one.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

logger = structlog.get_logger(__name__)

DEFAULT_FAILED_RETENTION_SECONDS = 7 * 24 * 60 * 60
STALLED_REASON = "job stalled more than allowable limit"


class JobState(str, Enum):
    """Where a queued job currently sits."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    PAUSED = "paused"
    FAILED = "failed"


LIVE_STATES = (JobState.ACTIVE, JobState.WAITING, JobState.DELAYED, JobState.PAUSED)


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True)
class BackoffOptions:
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_seconds: float = 5.0

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next run after ``attempts_made`` failed attempts."""
        if self.type == BackoffType.FIXED:
            return self.delay_seconds
        return self.delay_seconds * 2 ** max(0, attempts_made - 1)


@dataclass(frozen=True)
class EnqueueOptions:
    attempts: int = 3
    backoff: BackoffOptions = field(default_factory=BackoffOptions)


@dataclass
class QueuedJob:
    """A job as stored in the queue."""

    id: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    state: JobState
    failed_reason: str | None = None

    @property
    def attempt(self) -> int:
        """1-based number of the run in progress."""
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class TaskQueue(Protocol):
    async def enqueue(self, job_id: str, payload: dict[str, Any], options: EnqueueOptions) -> bool: ...

    async def list_job_ids(self, states: Iterable[JobState]) -> set[str]: ...

    async def get_job(self, job_id: str) -> QueuedJob | None: ...

    async def is_paused(self) -> bool: ...

    async def resume(self) -> None: ...


class RedisTaskQueue:
    """Task queue stored in Redis (redis.asyncio)."""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        lock_seconds: int = 30,
        failed_retention_seconds: int = DEFAULT_FAILED_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize queue.

        Args:
            client: Redis client created with decode_responses=True
            name: Queue name, used as key namespace
            lock_seconds: Lifetime of a worker's lock on an active job
            failed_retention_seconds: How long exhausted jobs stay inspectable
            clock: Epoch-seconds source (injectable for tests)
        """
        self.client = client
        self.name = name
        self.lock_seconds = lock_seconds
        self.failed_retention_seconds = failed_retention_seconds
        self.clock = clock

        self._prefix = f"queue:{name}"
        self.waiting_key = f"{self._prefix}:waiting"
        self.active_key = f"{self._prefix}:active"
        self.delayed_key = f"{self._prefix}:delayed"
        self.paused_key = f"{self._prefix}:paused"
        self.stalled_key = f"{self._prefix}:stalled"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self._prefix}:lock:{job_id}"

    async def enqueue(self, job_id: str, payload: dict[str, Any], options: EnqueueOptions) -> bool:
        """Add a job unless its id is already tracked.

        Returns:
            True if the job was added, False if it was a duplicate
        """
        job_key = self._job_key(job_id)

        # WATCH makes the existence check and the insert one atomic step;
        # a concurrent submitter of the same id aborts with WatchError
        async with self.client.pipeline(transaction=True) as pipe:
            await pipe.watch(job_key)
            if await pipe.exists(job_key):
                await pipe.unwatch()
                logger.debug("queue.enqueue_duplicate", queue=self.name, job_id=job_id)
                return False

            pipe.multi()
            pipe.hset(
                job_key,
                mapping={
                    "state": JobState.WAITING.value,
                    "payload": json.dumps(payload),
                    "attempts_made": 0,
                    "max_attempts": max(1, options.attempts),
                    "backoff_type": options.backoff.type.value,
                    "backoff_delay": options.backoff.delay_seconds,
                    "created_at": self.clock(),
                },
            )
            pipe.lpush(self.waiting_key, job_id)
            try:
                await pipe.execute()
            except WatchError:
                logger.debug("queue.enqueue_duplicate", queue=self.name, job_id=job_id)
                return False

        logger.info("queue.enqueued", queue=self.name, job_id=job_id)
        return True

    async def _promote_delayed(self) -> int:
        due = await self.client.zrangebyscore(self.delayed_key, 0, self.clock())
        promoted = 0
        for job_id in due:
            # ZREM decides which of several concurrent promoters moves the job
            if await self.client.zrem(self.delayed_key, job_id):
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hset(self._job_key(job_id), "state", JobState.WAITING.value)
                    pipe.lpush(self.waiting_key, job_id)
                    await pipe.execute()
                promoted += 1
        return promoted

    async def reserve(self, timeout: float = 5.0) -> QueuedJob | None:
        """Take the next job for processing, blocking up to ``timeout`` seconds.

        The returned job is active and locked for ``lock_seconds``; the
        worker must extend the lock while it runs and then call
        ``complete`` or ``fail``.
        """
        if await self.is_paused():
            await asyncio.sleep(timeout)
            return None

        await self._promote_delayed()

        job_id = await self.client.blmove(
            self.waiting_key, self.active_key, timeout, src="RIGHT", dest="LEFT"
        )
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            logger.warning("queue.orphan_id_dropped", queue=self.name, job_id=job_id)
            await self._release(job_id)
            return None

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._lock_key(job_id), "1", ex=self.lock_seconds)
            pipe.hdel(self.stalled_key, job_id)
            pipe.hset(self._job_key(job_id), "state", JobState.ACTIVE.value)
            await pipe.execute()

        job.state = JobState.ACTIVE
        return job

    async def extend_lock(self, job_id: str) -> bool:
        """Refresh the lock of an active job. False if the lock was already lost."""
        return bool(await self.client.expire(self._lock_key(job_id), self.lock_seconds))

    async def _release(self, job_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 0, job_id)
            pipe.delete(self._lock_key(job_id))
            pipe.hdel(self.stalled_key, job_id)
            await pipe.execute()

    async def complete(self, job_id: str) -> None:
        """Drop a successfully processed job."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 0, job_id)
            pipe.delete(self._lock_key(job_id))
            pipe.hdel(self.stalled_key, job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()

        logger.debug("queue.completed", queue=self.name, job_id=job_id)

    async def fail(self, job_id: str, error: str, retry: bool = True) -> bool:
        """Record a failed attempt and schedule the next one if any remain.

        Args:
            job_id: Active job that failed
            error: Failure reason kept on the job
            retry: False to give up regardless of remaining attempts

        Returns:
            True if the job was re-scheduled, False if it is now failed
        """
        job_key = self._job_key(job_id)
        attempts_made = await self.client.hincrby(job_key, "attempts_made", 1)
        fields = await self.client.hgetall(job_key)

        max_attempts = int(fields.get("max_attempts", 1))
        backoff = BackoffOptions(
            type=BackoffType(fields.get("backoff_type", BackoffType.EXPONENTIAL.value)),
            delay_seconds=float(fields.get("backoff_delay", 0)),
        )

        if retry and attempts_made < max_attempts:
            delay = backoff.delay_for(attempts_made)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 0, job_id)
                pipe.delete(self._lock_key(job_id))
                pipe.hdel(self.stalled_key, job_id)
                pipe.hset(
                    job_key,
                    mapping={"state": JobState.DELAYED.value, "failed_reason": error},
                )
                pipe.zadd(self.delayed_key, {job_id: self.clock() + delay})
                await pipe.execute()

            logger.warning(
                "queue.retry_scheduled",
                queue=self.name,
                job_id=job_id,
                attempts_made=attempts_made,
                max_attempts=max_attempts,
                delay_seconds=delay,
            )
            return True

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 0, job_id)
            pipe.delete(self._lock_key(job_id))
            pipe.hdel(self.stalled_key, job_id)
            pipe.hset(
                job_key,
                mapping={"state": JobState.FAILED.value, "failed_reason": error},
            )
            pipe.expire(job_key, self.failed_retention_seconds)
            await pipe.execute()

        logger.error(
            "queue.job_failed",
            queue=self.name,
            job_id=job_id,
            attempts_made=attempts_made,
            error=error,
        )
        return False

    async def recover_stalled(self) -> int:
        """Return active jobs whose worker lost its lock to the waiting list.

        An active job found without a lock is only marked on the first check.
        It is moved once it has stayed unlocked for ``lock_seconds``, so a job
        caught between ``reserve`` taking it and locking it is never handed
        out twice. A stalled run counts as an attempt; a job with none left
        is failed instead.

        Returns:
            Number of jobs moved back
        """
        now = self.clock()
        first_seen = await self.client.hgetall(self.stalled_key)
        active_ids = await self.client.lrange(self.active_key, 0, -1)

        moved = 0
        for job_id in active_ids:
            if await self.client.exists(self._lock_key(job_id)):
                if job_id in first_seen:
                    await self.client.hdel(self.stalled_key, job_id)
                continue

            seen_at = first_seen.get(job_id)
            if seen_at is None:
                await self.client.hsetnx(self.stalled_key, job_id, now)
                continue
            if now - float(seen_at) < self.lock_seconds:
                continue

            if await self._move_stalled(job_id) == JobState.WAITING:
                moved += 1

        gone = set(first_seen) - set(active_ids)
        if gone:
            await self.client.hdel(self.stalled_key, *gone)

        if moved:
            logger.warning("queue.stalled_recovered", queue=self.name, count=moved)
        return moved

    async def _move_stalled(self, job_id: str) -> JobState | None:
        job_key = self._job_key(job_id)
        lock_key = self._lock_key(job_id)

        # WATCH aborts the move if a worker locks the job or another
        # sweeper moves it first
        async with self.client.pipeline(transaction=True) as pipe:
            await pipe.watch(lock_key, job_key)
            if await pipe.exists(lock_key):
                await pipe.unwatch()
                await self.client.hdel(self.stalled_key, job_id)
                return None

            fields = await pipe.hgetall(job_key)
            pipe.multi()
            pipe.lrem(self.active_key, 0, job_id)
            pipe.hdel(self.stalled_key, job_id)

            if not fields:
                state: JobState | None = None
            else:
                attempts_made = int(fields.get("attempts_made", 0)) + 1
                max_attempts = int(fields.get("max_attempts", 1))
                if attempts_made < max_attempts:
                    state = JobState.WAITING
                    pipe.hset(
                        job_key,
                        mapping={"state": state.value, "attempts_made": attempts_made},
                    )
                    pipe.lpush(self.waiting_key, job_id)
                else:
                    state = JobState.FAILED
                    pipe.hset(
                        job_key,
                        mapping={
                            "state": state.value,
                            "attempts_made": attempts_made,
                            "failed_reason": STALLED_REASON,
                        },
                    )
                    pipe.expire(job_key, self.failed_retention_seconds)

            try:
                await pipe.execute()
            except WatchError:
                return None

        if state == JobState.FAILED:
            logger.error(
                "queue.job_failed",
                queue=self.name,
                job_id=job_id,
                attempts_made=attempts_made,
                error=STALLED_REASON,
            )
        elif state is None:
            logger.warning("queue.orphan_id_dropped", queue=self.name, job_id=job_id)
        return state

    async def list_job_ids(self, states: Iterable[JobState]) -> set[str]:
        """Ids currently tracked in any of ``states``.

        Waiting jobs of a paused queue are reported as ``paused``.
        """
        wanted = set(states)
        paused = await self.is_paused()
        ids: set[str] = set()

        if JobState.ACTIVE in wanted:
            ids.update(await self.client.lrange(self.active_key, 0, -1))
        if (JobState.WAITING in wanted and not paused) or (JobState.PAUSED in wanted and paused):
            ids.update(await self.client.lrange(self.waiting_key, 0, -1))
        if JobState.DELAYED in wanted:
            ids.update(await self.client.zrange(self.delayed_key, 0, -1))

        return ids

    async def get_job(self, job_id: str) -> QueuedJob | None:
        """Look up a tracked job by id (any state, including failed)."""
        fields = await self.client.hgetall(self._job_key(job_id))
        if not fields:
            return None

        return QueuedJob(
            id=job_id,
            payload=json.loads(fields.get("payload") or "{}"),
            attempts_made=int(fields.get("attempts_made", 0)),
            max_attempts=int(fields.get("max_attempts", 1)),
            state=JobState(fields.get("state", JobState.WAITING.value)),
            failed_reason=fields.get("failed_reason"),
        )

    async def is_paused(self) -> bool:
        return bool(await self.client.exists(self.paused_key))

    async def pause(self) -> None:
        await self.client.set(self.paused_key, "1")
        logger.info("queue.paused", queue=self.name)

    async def resume(self) -> None:
        await self.client.delete(self.paused_key)
        logger.info("queue.resumed", queue=self.name)
