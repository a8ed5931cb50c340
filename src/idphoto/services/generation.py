"""Generation job submission and read side.

Submission persists a pending job and hands ``{"jobId": ...}`` to the task
queue; the queue worker (``idphoto.workers.generation_worker``) does the
actual generation. All reads apply the same access rule: the caller may see a
job if they own it, or if their session created it.
"""

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import structlog

from idphoto.models.generation_job import GenerationJob, JobStatus
from idphoto.queue.task_queue import BackoffOptions, EnqueueOptions, TaskQueue
from idphoto.services.exceptions import (
    AccessDeniedError,
    JobNotReadyError,
    NotFoundError,
    QuotaExceededError,
    UnknownGridConfigError,
    ValidationError,
)
from idphoto.services.grid_configs import grid_config_exists
from idphoto.services.quotas import QuotaService
from idphoto.services.storage import Storage
from idphoto.uow import UoWFactory

logger = structlog.get_logger(__name__)

MIN_VARIATIONS = 1
MAX_VARIATIONS = 4

# Coarse progress shown to clients; not a measured percentage
STATUS_PROGRESS: dict[JobStatus, int] = {
    JobStatus.PENDING: 10,
    JobStatus.PROCESSING: 60,
    JobStatus.COMPLETED: 100,
    JobStatus.FAILED: 100,
}


@dataclass
class JobCreated:
    job_id: UUID
    status: JobStatus


@dataclass
class JobStatusView:
    job_id: UUID
    status: JobStatus
    progress: int
    error: str | None


@dataclass
class ResultImage:
    key: str
    url: str
    mime_type: str
    is_preview: bool
    data: str | None = None


@dataclass
class JobResult:
    job_id: UUID
    images: list[ResultImage]


@dataclass
class JobHistoryEntry:
    id: UUID
    grid_config_id: str
    variation_count: int
    status: JobStatus
    created_at: datetime
    completed_at: datetime | None


def clamp_variation_count(variation_count: int | None) -> int:
    return min(max(variation_count or MIN_VARIATIONS, MIN_VARIATIONS), MAX_VARIATIONS)


def can_access(job: GenerationJob, owner_id: str | None, session_id: str | None) -> bool:
    """Owner match, or a session match (also after the job gained an owner)."""
    if owner_id and job.owner_id == owner_id:
        return True
    if not job.owner_id and session_id and job.session_id == session_id:
        return True
    if session_id and job.session_id and job.session_id == session_id:
        return True
    return False


class GenerationService:
    """Creates generation jobs and serves their status, results and history."""

    def __init__(
        self,
        uow_factory: UoWFactory,
        task_queue: TaskQueue,
        quotas: QuotaService,
        storage: Storage,
        enqueue_options: EnqueueOptions | None = None,
        signed_url_ttl_seconds: int = 300,
    ):
        """Initialize generation service.

        Args:
            uow_factory: Creates UnitOfWork instances
            task_queue: Queue the worker consumes
            quotas: Anonymous preview allowance
            storage: Object storage for signed URLs and inline data
            enqueue_options: Attempts and backoff for submitted jobs
            signed_url_ttl_seconds: Lifetime of returned image URLs
        """
        self.uow_factory = uow_factory
        self.task_queue = task_queue
        self.quotas = quotas
        self.storage = storage
        self.enqueue_options = enqueue_options or EnqueueOptions(
            attempts=3, backoff=BackoffOptions(delay_seconds=5.0)
        )
        self.signed_url_ttl_seconds = signed_url_ttl_seconds

    async def create_job(
        self,
        uploaded_image_id: UUID,
        grid_config_id: str,
        variation_count: int | None = None,
        owner_id: str | None = None,
        session_id: str | None = None,
    ) -> JobCreated:
        """Validate a request, persist a pending job and queue it.

        Raises:
            UnknownGridConfigError: Grid config is not in the catalog
            QuotaExceededError: Anonymous session has too few previews left
            NotFoundError: Uploaded image does not exist
            AccessDeniedError: Uploaded image belongs to someone else
        """
        count = clamp_variation_count(variation_count)

        if not grid_config_exists(grid_config_id):
            raise UnknownGridConfigError(f"Invalid grid configuration: {grid_config_id}")

        if not owner_id and session_id:
            if not await self.quotas.can_generate(session_id, count):
                logger.warning("generation.quota_exceeded", session_id=session_id, requested=count)
                raise QuotaExceededError(
                    "Free preview limit reached. Please sign up or purchase to continue."
                )

        async with await self.uow_factory() as uow:
            upload = await uow.uploads.get_by_id(uploaded_image_id)
            if upload is None:
                raise NotFoundError("Uploaded image not found")
            if not upload.is_accessible_by(owner_id, session_id):
                raise AccessDeniedError("Access denied to uploaded image")

            job = await uow.jobs.add(
                GenerationJob(
                    owner_id=owner_id,
                    session_id=session_id,
                    uploaded_image_id=upload.id,
                    grid_config_id=grid_config_id,
                    variation_count=count,
                )
            )

        # Row is committed before the worker can see the id
        await self.task_queue.enqueue(str(job.id), {"jobId": str(job.id)}, self.enqueue_options)

        logger.info(
            "generation.job.created",
            job_id=str(job.id),
            grid_config_id=grid_config_id,
            variation_count=count,
            anonymous=job.is_anonymous,
        )
        return JobCreated(job_id=job.id, status=job.status)

    async def _get_accessible_job(
        self, job_id: UUID, owner_id: str | None, session_id: str | None
    ) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)

        if job is None:
            raise NotFoundError("Job not found")
        if not can_access(job, owner_id, session_id):
            raise AccessDeniedError("Access denied")
        return job

    async def get_status(
        self, job_id: UUID, owner_id: str | None = None, session_id: str | None = None
    ) -> JobStatusView:
        job = await self._get_accessible_job(job_id, owner_id, session_id)
        return JobStatusView(
            job_id=job.id,
            status=job.status,
            progress=STATUS_PROGRESS.get(job.status, 0),
            error=job.error_message,
        )

    async def get_result(
        self,
        job_id: UUID,
        owner_id: str | None = None,
        session_id: str | None = None,
        include_data: bool = False,
    ) -> JobResult:
        """Preview (watermarked) images of a completed job.

        Raises:
            NotFoundError / AccessDeniedError: Per the access rule
            JobNotReadyError: Job has not completed
        """
        job = await self._get_accessible_job(job_id, owner_id, session_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotReadyError("Job not completed yet")

        async with await self.uow_factory() as uow:
            rows = await uow.images.find_by_job(job.id, preview_only=True)

        async def _to_result(row) -> ResultImage:
            image = ResultImage(
                key=row.storage_key,
                url=await self.storage.signed_url(row.storage_key, self.signed_url_ttl_seconds),
                mime_type=row.mime_type,
                is_preview=row.is_preview,
            )
            if include_data:
                image.data = base64.b64encode(await self.storage.get(row.storage_key)).decode(
                    "ascii"
                )
            return image

        images = await asyncio.gather(*(_to_result(row) for row in rows))
        return JobResult(job_id=job.id, images=list(images))

    async def get_history(
        self, owner_id: str | None = None, session_id: str | None = None
    ) -> list[JobHistoryEntry]:
        """Caller's jobs, newest first; the account wins over the session.

        Raises:
            ValidationError: Neither owner nor session given
        """
        if not owner_id and not session_id:
            raise ValidationError("User or session required")

        async with await self.uow_factory() as uow:
            if owner_id:
                jobs = await uow.jobs.find_by_owner(owner_id)
            else:
                jobs = await uow.jobs.find_by_session(session_id)  # type: ignore[arg-type]

        return [
            JobHistoryEntry(
                id=job.id,
                grid_config_id=job.grid_config_id,
                variation_count=job.variation_count,
                status=job.status,
                created_at=job.created_at,
                completed_at=job.completed_at,
            )
            for job in jobs
        ]
