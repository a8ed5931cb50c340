"""S3-compatible object storage client (AWS S3, DigitalOcean Spaces, MinIO)."""

import asyncio
from typing import Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from idphoto.services.exceptions import StorageError

logger = structlog.get_logger(__name__)


class Storage(Protocol):
    async def get(self, key: str) -> bytes: ...

    async def put(self, key: str, data: bytes, mime_type: str) -> str: ...

    async def signed_url(self, key: str, ttl_seconds: int) -> str: ...


class S3Storage:
    """Object storage for uploaded and generated images.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
    ):
        """Initialize storage client.

        Args:
            bucket: Bucket holding all objects
            region: Bucket region
            endpoint_url: Custom endpoint for S3-compatible providers (None for AWS)
            access_key: Access key id (None to use the default credential chain)
            secret_key: Secret access key
        """
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
        )

    async def get(self, key: str) -> bytes:
        """Download object bytes.

        Raises:
            StorageError: If the object is missing or the request fails
        """

        def _get() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response.get("Body")
            return body.read() if body is not None else b""

        try:
            return await asyncio.to_thread(_get)
        except (ClientError, BotoCoreError) as e:
            logger.error("storage.download_failed", key=key, error=str(e))
            raise StorageError(f"Failed to download {key}: {e}") from e

    async def put(self, key: str, data: bytes, mime_type: str) -> str:
        """Upload bytes under ``key`` (overwrites), returning the key.

        Raises:
            StorageError: If the upload fails
        """
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("storage.upload_failed", key=key, error=str(e))
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.debug("storage.uploaded", key=key, size=len(data))
        return key

    async def signed_url(self, key: str, ttl_seconds: int) -> str:
        """Presigned GET URL valid for ``ttl_seconds``."""
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign URL for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
