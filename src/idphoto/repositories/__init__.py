"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from idphoto.repositories.generated_image import GeneratedImageRepository
from idphoto.repositories.generation_job import GenerationJobRepository
from idphoto.repositories.session_quota import SessionQuotaRepository
from idphoto.repositories.uploaded_image import UploadedImageRepository

__all__ = [
    "GeneratedImageRepository",
    "GenerationJobRepository",
    "SessionQuotaRepository",
    "UploadedImageRepository",
]
