"""SessionQuota entity - Free preview allowance of an anonymous session."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from idphoto.core.timezone import utcnow


class SessionQuota(SQLModel, table=True):
    """SessionQuota counts previews generated by an anonymous session."""

    __tablename__ = "session_quotas"  # type: ignore[assignment]

    session_id: str = Field(primary_key=True, max_length=255)
    preview_count: int = Field(default=0, ge=0)
    max_previews: int = Field(default=3, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def remaining(self) -> int:
        return max(0, self.max_previews - self.preview_count)
