"""Object storage for source and generated images."""

from idphoto.services.storage.s3_storage import S3Storage, Storage

__all__ = ["S3Storage", "Storage"]
