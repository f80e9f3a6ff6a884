"""MinioObjectStorage — :class:`ObjectStorage` on top of the ``minio`` SDK.

The MinIO client is synchronous; every call is pushed onto a worker thread
with :func:`asyncio.to_thread` so the event loop is never blocked.

SDK failures are re-raised as
:class:`~filekeeper.core.errors.StorageProviderError` carrying the operation
name and storage key.  :meth:`MinioObjectStorage.health` and
:meth:`MinioObjectStorage.exists` never raise for a missing bucket/object.

Usage::

    from minio import Minio
    from filekeeper.services.storage import MinioObjectStorage

    client = Minio("minio:9000", access_key="...", secret_key="...", secure=False)
    storage = MinioObjectStorage(client, bucket="files")
    meta = await storage.get_metadata("docs/report.pdf")
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from filekeeper.config import Settings
from filekeeper.core.errors import StorageProviderError
from filekeeper.core.file_record import StorageProvider
from filekeeper.core.interfaces import (
    ObjectStorage,
    PresignedUploadRequest,
    UploadRequest,
    UploadResult,
)
from filekeeper.core.metadata import ObjectMetadata

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NoSuchBucket"})
_MULTIPART_PART_SIZE = 10 * 1024 * 1024


def build_minio_client(settings: Settings) -> Minio:
    return Minio(
        endpoint=settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
    )


class MinioObjectStorage(ObjectStorage):
    """Stores objects in a single MinIO bucket.

    Args:
        client: Configured :class:`minio.Minio` client.
        bucket: Bucket that holds every object managed by this instance.
    """

    def __init__(self, client: Minio, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @property
    def provider(self) -> StorageProvider:
        return StorageProvider.MINIO

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Object operations
    # ------------------------------------------------------------------

    async def upload(self, storage_key: str, request: UploadRequest) -> UploadResult:
        try:
            result = await asyncio.to_thread(
                self._client.put_object,
                bucket_name=self._bucket,
                object_name=storage_key,
                data=request.content,
                length=request.size if request.size > 0 else -1,
                content_type=request.content_type,
                metadata=request.metadata or None,
                part_size=_MULTIPART_PART_SIZE,
            )
        except S3Error as exc:
            raise StorageProviderError("upload", storage_key, f"{exc.code}: {exc.message}") from exc
        logger.info(
            "Uploaded object bucket=%s key=%s size=%d", self._bucket, storage_key, request.size
        )
        return UploadResult(
            storage_key=storage_key,
            etag=result.etag,
            size=request.size,
            version_id=result.version_id,
        )

    async def download(self, storage_key: str) -> bytes:
        return await self._call("download", storage_key, self._read_object, storage_key)

    def _read_object(self, storage_key: str) -> bytes:
        response = self._client.get_object(bucket_name=self._bucket, object_name=storage_key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def remove(self, storage_key: str) -> None:
        await self._call(
            "remove",
            storage_key,
            self._client.remove_object,
            bucket_name=self._bucket,
            object_name=storage_key,
        )
        logger.info("Removed object bucket=%s key=%s", self._bucket, storage_key)

    async def remove_batch(self, storage_keys: Sequence[str]) -> None:
        if not storage_keys:
            return

        def _remove_all() -> list:
            # remove_objects is lazy; errors only surface while iterating.
            return list(
                self._client.remove_objects(
                    bucket_name=self._bucket,
                    delete_object_list=[DeleteObject(key) for key in storage_keys],
                )
            )

        try:
            errors = await asyncio.to_thread(_remove_all)
        except S3Error as exc:
            raise StorageProviderError("remove_batch", None, f"{exc.code}: {exc.message}") from exc
        if errors:
            failed = ", ".join(f"{err.name} ({err.code})" for err in errors)
            raise StorageProviderError(
                "remove_batch",
                None,
                f"{len(errors)} of {len(storage_keys)} objects could not be deleted: {failed}",
            )
        logger.info("Removed %d objects from bucket=%s", len(storage_keys), self._bucket)

    async def get_metadata(self, storage_key: str) -> ObjectMetadata:
        stat = await self._call(
            "get_metadata",
            storage_key,
            self._client.stat_object,
            bucket_name=self._bucket,
            object_name=storage_key,
        )
        user_metadata = {
            key[len("x-amz-meta-"):]: value
            for key, value in (stat.metadata or {}).items()
            if key.lower().startswith("x-amz-meta-")
        }
        return ObjectMetadata(
            key=storage_key,
            size=stat.size,
            etag=stat.etag,
            content_type=stat.content_type,
            last_modified=stat.last_modified or datetime.now(tz=timezone.utc),
            version_id=stat.version_id,
            metadata=user_metadata,
        )

    async def exists(self, storage_key: str) -> bool:
        try:
            await asyncio.to_thread(
                self._client.stat_object, bucket_name=self._bucket, object_name=storage_key
            )
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return False
            raise StorageProviderError("exists", storage_key, f"{exc.code}: {exc.message}") from exc
        return True

    async def health(self) -> bool:
        try:
            return await asyncio.to_thread(self._client.bucket_exists, bucket_name=self._bucket)
        except Exception as exc:
            logger.error("MinIO health check failed bucket=%s: %r", self._bucket, exc)
            return False

    # ------------------------------------------------------------------
    # Presigned URLs
    # ------------------------------------------------------------------

    async def presign_upload(self, storage_key: str, request: PresignedUploadRequest) -> str:
        return await self._call(
            "presign_upload",
            storage_key,
            self._client.presigned_put_object,
            bucket_name=self._bucket,
            object_name=storage_key,
            expires=request.expires_in,
        )

    async def presign_download(self, storage_key: str, expires_in: timedelta) -> str:
        return await self._call(
            "presign_download",
            storage_key,
            self._client.presigned_get_object,
            bucket_name=self._bucket,
            object_name=storage_key,
            expires=expires_in,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(self, operation: str, storage_key: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except S3Error as exc:
            logger.warning(
                "MinIO %s failed bucket=%s key=%s code=%s",
                operation,
                self._bucket,
                storage_key,
                exc.code,
            )
            raise StorageProviderError(operation, storage_key, f"{exc.code}: {exc.message}") from exc
