"""UploadedImage entity - Source photo a generation job is based on."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from idphoto.core.timezone import utcnow


class UploadedImage(SQLModel, table=True):
    """UploadedImage is a user-supplied source photo stored in object storage."""

    __tablename__ = "uploaded_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: Optional[str] = Field(default=None, max_length=255, index=True)
    session_id: Optional[str] = Field(default=None, max_length=255, index=True)
    storage_key: str = Field(max_length=512)
    mime_type: str = Field(default="image/jpeg", max_length=64)
    file_size: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    def is_accessible_by(self, owner_id: str | None, session_id: str | None) -> bool:
        """Owner match, or session match for uploads made anonymously."""
        if owner_id and self.owner_id == owner_id:
            return True
        if session_id and self.session_id == session_id:
            return True
        return False
