"""UploadedImage repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from idphoto.models.uploaded_image import UploadedImage


class UploadedImageRepository:
    """Repository for UploadedImage entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, image: UploadedImage) -> UploadedImage:
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_id(self, image_id: UUID) -> UploadedImage | None:
        result = await self.session.execute(
            select(UploadedImage).where(UploadedImage.id == image_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()
