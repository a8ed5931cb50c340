"""GenerationJob repository.

Provides data access and lifecycle updates for GenerationJob entities,
including the recovery query used at process start.
"""

from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from idphoto.core.timezone import utcnow
from idphoto.models.generation_job import GenerationJob, JobStatus


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Status changes go through the entity's transition methods so an invalid
    transition raises before anything is flushed.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def mark_processing(self, job: GenerationJob, started_at: datetime | None = None) -> None:
        """Move job to processing and stamp started_at."""
        job.mark_processing(started_at or utcnow())
        self.session.add(job)
        await self.session.flush()

    async def mark_completed(self, job: GenerationJob, model_used: str, is_fallback: bool) -> None:
        """Move job to completed with the model that produced its images."""
        job.mark_completed(utcnow(), model_used=model_used, is_fallback=is_fallback)
        self.session.add(job)
        await self.session.flush()

    async def mark_failed(self, job: GenerationJob, error_message: str) -> None:
        """Mark job as permanently failed with error message.

        Args:
            job: GenerationJob entity to update
            error_message: Error description (truncated to 1000 characters)
        """
        job.mark_failed(error_message, utcnow())
        self.session.add(job)
        await self.session.flush()

    async def record_error(self, job: GenerationJob, error_message: str) -> None:
        """Store the error of an attempt that the queue will retry."""
        job.record_error(error_message)
        self.session.add(job)
        await self.session.flush()

    async def find_stale_jobs(
        self, statuses: Sequence[JobStatus], created_after: datetime
    ) -> list[GenerationJob]:
        """Retrieve unfinished jobs created after a cutoff.

        Used at startup to find jobs whose queue entry may have been lost.
        Older jobs are presumed abandoned and are not returned.

        Args:
            statuses: Statuses to include (typically pending, processing)
            created_after: Lookback cutoff (exclusive)

        Returns:
            Jobs ordered by created_at (oldest first)
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status.in_(list(statuses)))  # type: ignore[attr-defined]
            .where(GenerationJob.created_at > created_after)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def find_by_owner(self, owner_id: str, limit: int = 100) -> list[GenerationJob]:
        """Retrieve an account's jobs, newest first."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_session(self, session_id: str, limit: int = 100) -> list[GenerationJob]:
        """Retrieve an anonymous session's jobs, newest first."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.session_id == session_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
