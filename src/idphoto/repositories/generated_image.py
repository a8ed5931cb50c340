"""GeneratedImage repository."""

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from idphoto.models.generated_image import GeneratedImage


class GeneratedImageRepository:
    """Repository for GeneratedImage entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, image: GeneratedImage) -> GeneratedImage:
        """Persist a generated image row."""
        self.session.add(image)
        await self.session.flush()
        return image

    async def find_by_job(self, job_id: UUID, preview_only: bool = False) -> list[GeneratedImage]:
        """Retrieve a job's images ordered by variation (full before preview).

        Args:
            job_id: Owning job
            preview_only: Return only watermarked preview rows
        """
        stmt = select(GeneratedImage).where(GeneratedImage.job_id == job_id)  # type: ignore[arg-type]
        if preview_only:
            stmt = stmt.where(GeneratedImage.is_preview.is_(True))  # type: ignore[attr-defined]
        stmt = stmt.order_by(
            GeneratedImage.variation_index.asc(),  # type: ignore[attr-defined]
            GeneratedImage.is_preview.asc(),  # type: ignore[attr-defined]
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_by_job(self, job_id: UUID) -> int:
        """Remove rows left by an interrupted earlier attempt of the job.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(GeneratedImage).where(GeneratedImage.job_id == job_id)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
