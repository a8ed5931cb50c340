"""GeneratedImage entity - One stored rendition of a generated variation."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from idphoto.core.timezone import utcnow


class GeneratedImage(SQLModel, table=True):
    """GeneratedImage is a stored rendition of one job variation.

    Each variation produces two rows sharing variation_index: the full
    (unwatermarked, is_preview=False) image used for paid prints and the
    watermarked preview shown before purchase.
    """

    __tablename__ = "generated_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="generation_jobs.id", index=True)
    variation_index: int = Field(ge=1, le=4)
    storage_key: str = Field(max_length=512)
    mime_type: str = Field(max_length=64)
    file_size: int = Field(ge=0)
    is_preview: bool = Field(default=False)
    is_permanent: bool = Field(default=False)
    expires_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    def mark_permanent(self) -> None:
        """Keep the image past the cleanup window (e.g. once an order is paid)."""
        self.is_permanent = True
        self.expires_at = None
