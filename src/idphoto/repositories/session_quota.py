"""SessionQuota repository.

Counters are written with INSERT ... ON CONFLICT DO UPDATE so concurrent
increments for the same session never lose an update.
"""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from idphoto.core.timezone import utcnow
from idphoto.models.session_quota import SessionQuota


class SessionQuotaRepository:
    """Repository for SessionQuota entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_session(self, session_id: str) -> SessionQuota | None:
        result = await self.session.execute(
            select(SessionQuota).where(SessionQuota.session_id == session_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def _upsert(self, values: dict, set_: dict) -> SessionQuota:
        stmt = insert(SessionQuota).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=["session_id"], set_=set_)
        result = await self.session.scalars(
            stmt.returning(SessionQuota),
            execution_options={"populate_existing": True},
        )
        return result.one()

    async def upsert_increment(
        self, session_id: str, increment_by: int, max_previews: int
    ) -> SessionQuota:
        """Add to a session's preview count, creating the row if needed.

        Query explanation:
        - INSERT: First generation for the session starts at increment_by
        - ON CONFLICT (session_id): Row already exists
        - DO UPDATE: preview_count = preview_count + increment_by
        """
        now = utcnow()
        return await self._upsert(
            values={
                "session_id": session_id,
                "preview_count": increment_by,
                "max_previews": max_previews,
                "updated_at": now,
            },
            set_={
                "preview_count": SessionQuota.preview_count + increment_by,
                "updated_at": now,
            },
        )

    async def upsert_reset(self, session_id: str, max_previews: int) -> SessionQuota:
        """Zero the preview count and set a new ceiling."""
        now = utcnow()
        return await self._upsert(
            values={
                "session_id": session_id,
                "preview_count": 0,
                "max_previews": max_previews,
                "updated_at": now,
            },
            set_={"preview_count": 0, "max_previews": max_previews, "updated_at": now},
        )

    async def upsert_increase_max(
        self, session_id: str, additional_previews: int, base_max_previews: int
    ) -> SessionQuota:
        """Raise a session's ceiling (e.g. after sign-up)."""
        now = utcnow()
        return await self._upsert(
            values={
                "session_id": session_id,
                "preview_count": 0,
                "max_previews": base_max_previews + additional_previews,
                "updated_at": now,
            },
            set_={
                "max_previews": SessionQuota.max_previews + additional_previews,
                "updated_at": now,
            },
        )
