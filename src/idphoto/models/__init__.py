"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from idphoto.models.generated_image import GeneratedImage
from idphoto.models.generation_job import (
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
)
from idphoto.models.session_quota import SessionQuota
from idphoto.models.uploaded_image import UploadedImage

__all__ = [
    "GeneratedImage",
    "GenerationJob",
    "InvalidStateTransition",
    "JobStatus",
    "SessionQuota",
    "UploadedImage",
]
