"""Startup reconciliation of generation jobs against the task queue.

This module provides the RecoveryService which:
1. Resumes the generation queue if a previous process left it paused
2. Finds pending/processing jobs created within the lookback window
3. Re-queues those that the queue no longer tracks, using the job id as the
   dedup key so a concurrent recovery in another process is a no-op
4. Marks failed those the queue gave up on (e.g. a job that kept stalling)

Jobs older than the lookback window are presumed abandoned and left alone.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

import structlog

from idphoto.core.timezone import utcnow
from idphoto.models.generation_job import JobStatus
from idphoto.queue.task_queue import (
    LIVE_STATES,
    BackoffOptions,
    EnqueueOptions,
    JobState,
    TaskQueue,
)
from idphoto.services.exceptions import RecoveryError
from idphoto.uow import UoWFactory

logger = structlog.get_logger(__name__)

RECOVERY_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
DEFAULT_LOOKBACK_HOURS = 24


@dataclass
class RecoveryResult:
    """Result of a recovery run."""

    queue_resumed: bool = False
    stale_count: int = 0  # Unfinished jobs inside the lookback window
    already_queued_count: int = 0  # Still tracked by the queue
    requeued_count: int = 0  # Submitted again (or would be, on a dry run)
    failed_count: int = 0  # Given up on by the queue, marked failed here
    errors: list[str] = field(default_factory=list)  # Non-fatal errors


class RecoveryService:
    """Re-queues generation jobs orphaned by a crash or restart."""

    def __init__(
        self,
        uow_factory: UoWFactory,
        task_queue: TaskQueue,
        lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
        enqueue_options: EnqueueOptions | None = None,
    ):
        self.uow_factory = uow_factory
        self.task_queue = task_queue
        self.lookback_hours = lookback_hours
        self.enqueue_options = enqueue_options or EnqueueOptions(
            attempts=3, backoff=BackoffOptions(delay_seconds=5.0)
        )

    async def recover(self, dry_run: bool = False) -> RecoveryResult:
        """Run one reconciliation pass. Never raises.

        Args:
            dry_run: Report what would be re-queued without touching the queue

        Returns:
            RecoveryResult with aggregate counts and any errors
        """
        result = RecoveryResult()

        try:
            await self._recover(result, dry_run)
        except Exception as e:
            error = RecoveryError(f"Failed to recover generation queue: {e}")
            result.errors.append(str(error))
            logger.error(
                "recovery.failed",
                error=str(e),
                error_type=type(e).__name__,
            )

        logger.info(
            "recovery.completed",
            dry_run=dry_run,
            queue_resumed=result.queue_resumed,
            stale_jobs=result.stale_count,
            already_queued=result.already_queued_count,
            requeued=result.requeued_count,
            failed=result.failed_count,
            errors=len(result.errors),
        )
        return result

    async def _recover(self, result: RecoveryResult, dry_run: bool) -> None:
        if await self.task_queue.is_paused():
            if not dry_run:
                await self.task_queue.resume()
            result.queue_resumed = True
            logger.warning("recovery.queue_resumed", dry_run=dry_run)

        created_after = utcnow() - timedelta(hours=self.lookback_hours)
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.find_stale_jobs(RECOVERY_STATUSES, created_after)

        result.stale_count = len(jobs)
        if not jobs:
            return

        live_ids = await self.task_queue.list_job_ids(LIVE_STATES)

        for job in jobs:
            job_id = str(job.id)

            if job_id in live_ids:
                result.already_queued_count += 1
                continue

            queued = await self.task_queue.get_job(job_id)
            if queued is not None and queued.state == JobState.FAILED:
                await self._fail_abandoned(job_id, queued.failed_reason, result, dry_run)
                continue
            if queued is not None:
                result.already_queued_count += 1
                continue

            if dry_run:
                result.requeued_count += 1
                logger.info("recovery.would_requeue", job_id=job_id, status=job.status.value)
                continue

            try:
                if await self.task_queue.enqueue(job_id, {"jobId": job_id}, self.enqueue_options):
                    result.requeued_count += 1
                    logger.warning("recovery.requeued", job_id=job_id, status=job.status.value)
                else:
                    result.already_queued_count += 1
            except Exception as e:
                result.errors.append(f"Failed to re-queue job {job_id}: {e}")
                logger.warning("recovery.requeue_failed", job_id=job_id, error=str(e))

    async def _fail_abandoned(
        self, job_id: str, reason: str | None, result: RecoveryResult, dry_run: bool
    ) -> None:
        message = reason or "Job failed in the generation queue"
        result.failed_count += 1

        if dry_run:
            logger.info("recovery.would_fail", job_id=job_id, reason=message)
            return

        try:
            async with await self.uow_factory() as uow:
                job = await uow.jobs.get_by_id(UUID(job_id))
                if job is not None and not job.is_terminal:
                    await uow.jobs.mark_failed(job, message)
            logger.warning("recovery.marked_failed", job_id=job_id, reason=message)
        except Exception as e:
            result.errors.append(f"Failed to mark job {job_id} failed: {e}")
            logger.warning("recovery.mark_failed_failed", job_id=job_id, error=str(e))
