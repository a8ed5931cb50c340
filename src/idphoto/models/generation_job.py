"""GenerationJob entity - ID photo generation request with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from idphoto.core.timezone import utcnow


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one request for up to four ID photo variations.

    Owned by an authenticated user (owner_id) or an anonymous session
    (session_id). Status only moves forward:
    pending -> processing -> completed | failed.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: Optional[str] = Field(default=None, max_length=255, index=True)
    session_id: Optional[str] = Field(default=None, max_length=255, index=True)
    uploaded_image_id: Optional[UUID] = Field(default=None, foreign_key="uploaded_images.id")
    grid_config_id: str = Field(max_length=64)
    variation_count: int = Field(default=1, ge=1, le=4)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    error_message: Optional[str] = Field(default=None, max_length=1000)

    # Outcome metadata, written on completion
    model_used: Optional[str] = Field(default=None, max_length=128)
    is_fallback: bool = Field(default=False)

    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_anonymous(self) -> bool:
        return self.session_id is not None and self.owner_id is None

    def mark_processing(self, started_at: datetime) -> None:
        """Transition from pending to processing.

        Re-entering processing is allowed: a delivery retried after a
        transient failure, or recovered after a worker crash, restarts the
        job from the beginning.

        Raises:
            InvalidStateTransition: If the job already reached a terminal state
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark processing from terminal state {self.status.value}."
            )
        self.status = JobStatus.PROCESSING
        self.started_at = started_at
        self.error_message = None

    def mark_completed(self, completed_at: datetime, model_used: str, is_fallback: bool) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Job must be in processing state."
            )
        self.status = JobStatus.COMPLETED
        self.completed_at = completed_at
        self.model_used = model_used
        self.is_fallback = is_fallback
        self.error_message = None

    def mark_failed(self, error_message: str, completed_at: datetime) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.status = JobStatus.FAILED
        self.error_message = error_message[:1000]
        self.completed_at = completed_at

    def record_error(self, error_message: str) -> None:
        """Keep the latest attempt's error on a job that will be retried.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot record error on terminal state {self.status.value}."
            )
        self.error_message = error_message[:1000]
