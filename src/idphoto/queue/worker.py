"""Bounded worker pool consuming the task queue.

Each slot reserves one job, runs the handler to completion, then reports the
outcome back to the queue:
- handler returns: job is completed and dropped
- PermanentError: job is failed without further attempts
- any other exception: queue schedules a retry with backoff until attempts
  are exhausted

A slot's lock on its job is renewed while the handler runs. If the process
dies, the lock expires and the stalled check returns the job to the queue.
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from idphoto.queue.task_queue import QueuedJob, RedisTaskQueue
from idphoto.services.exceptions import PermanentError

logger = structlog.get_logger(__name__)

JobHandler = Callable[[QueuedJob], Awaitable[None]]


class QueueWorker:
    """Runs ``concurrency`` consumer slots over one queue."""

    def __init__(
        self,
        queue: RedisTaskQueue,
        handler: JobHandler,
        concurrency: int = 5,
        poll_timeout: float = 5.0,
        stalled_check_interval: float = 30.0,
        error_backoff: float = 5.0,
    ):
        """Initialize worker pool.

        Args:
            queue: Queue to consume
            handler: Coroutine processing one job
            concurrency: Number of jobs processed at the same time
            poll_timeout: Seconds a slot blocks waiting for a job
            stalled_check_interval: Seconds between stalled-job sweeps
            error_backoff: Seconds a slot sleeps after an unexpected loop error
        """
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.stalled_check_interval = stalled_check_interval
        self.error_backoff = error_backoff

    async def process_job(self, job: QueuedJob) -> None:
        """Run the handler for one reserved job and settle it in the queue."""
        start_time = time.time()
        lock_task = asyncio.create_task(self._renew_lock(job.id))

        logger.info(
            "worker.job.started",
            job_id=job.id,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
        )

        try:
            await self.handler(job)

        except asyncio.CancelledError:
            # Lock expires and the stalled sweep re-queues the job
            raise

        except PermanentError as e:
            await self.queue.fail(job.id, str(e), retry=False)
            logger.error(
                "worker.job.failed",
                job_id=job.id,
                error_type=type(e).__name__,
                error_message=str(e),
                attempt=job.attempt,
                will_retry=False,
            )

        except Exception as e:
            will_retry = await self.queue.fail(job.id, str(e))
            logger.warning(
                "worker.job.failed",
                job_id=job.id,
                error_type=type(e).__name__,
                error_message=str(e),
                attempt=job.attempt,
                will_retry=will_retry,
            )

        else:
            await self.queue.complete(job.id)
            logger.info(
                "worker.job.completed",
                job_id=job.id,
                duration_seconds=time.time() - start_time,
            )

        finally:
            lock_task.cancel()

    async def _renew_lock(self, job_id: str) -> None:
        interval = max(self.queue.lock_seconds / 2, 1)
        while True:
            await asyncio.sleep(interval)
            if not await self.queue.extend_lock(job_id):
                logger.warning("worker.lock_lost", job_id=job_id)
                return

    async def _consume(self, slot: int) -> None:
        while True:
            try:
                job = await self.queue.reserve(timeout=self.poll_timeout)
                if job is None:
                    continue
                await self.process_job(job)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    slot=slot,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(self.error_backoff)

    async def _check_stalled(self) -> None:
        while True:
            try:
                await self.queue.recover_stalled()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("worker.stalled_check_failed", error=str(e))
            await asyncio.sleep(self.stalled_check_interval)

    async def run(self) -> None:
        """Consume until cancelled."""
        logger.info(
            "worker.started",
            queue=self.queue.name,
            concurrency=self.concurrency,
        )

        tasks = [asyncio.create_task(self._consume(slot)) for slot in range(self.concurrency)]
        tasks.append(asyncio.create_task(self._check_stalled()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("worker.stopped", queue=self.queue.name)
            raise
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
