"""FileService — orchestrates the file lifecycle across storage and persistence.

:class:`FileService` sequences every operation that touches more than one
collaborator:

* **Persist before upload.**  A new :class:`FileRecord` is committed as
  ``Pending`` before a single byte reaches storage, so an upload that dies
  half-way leaves a record the reconciler (or an operator) can reject rather
  than an orphaned object nobody knows about.
* **Transactional deletes.**  Records are tombstoned in memory, objects are
  removed from storage, then the tombstones are committed.  Any failure
  before the commit rolls the unit of work back.
* **Events after commit.**  Lifecycle events queued on the aggregates are
  handed to the :class:`EventPublisher` only once the state change is
  durable.  A publisher failure is logged and the events stay in the outbox.

Collaborator failures surface as
:class:`~filekeeper.core.errors.StorageProviderError` or
:class:`~filekeeper.core.errors.PersistenceError` with the failing step in
the message.

Usage::

    service = FileService(repository, storage, publisher, scan_client=scanner,
                          scanning_enabled=True)
    record = await service.upload_file(UploadRequest(...))
"""

from __future__ import annotations

import io
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from prometheus_client import Counter

from filekeeper.core.errors import (
    DuplicateContentError,
    FileNotAvailableError,
    InvalidStateTransition,
    PersistenceError,
    RecordNotFoundError,
    StorageProviderError,
)
from filekeeper.core.file_record import FileRecord, FileStatus, StorageProvider
from filekeeper.core.interfaces import (
    EventPublisher,
    FileRecordRepository,
    ObjectStorage,
    PresignedUploadRequest,
    UploadRequest,
)
from filekeeper.core.metadata import ObjectMetadata
from filekeeper.core.reconciler import ReconcileOutcome, ReconcileResult, Reconciler
from filekeeper.core.scan_client import FILE_TOO_LARGE, ScanClient

logger = logging.getLogger(__name__)

#: Labels: ``operation`` (upload | presign_upload | download | presign_download |
#: delete | delete_batch | scan | reject | validate).
file_operations_total = Counter(
    "filekeeper_file_operations_total",
    "File lifecycle operations completed",
    ["operation"],
)


class FileService:
    """Application service for uploads, downloads, scans and deletes.

    Args:
        repository: Persistence collaborator (one unit of work).
        storage: Object storage collaborator.
        publisher: Receives committed lifecycle events.  When ``None``
            events stay queued on the aggregates and in the outbox.
        scan_client: Malware scanner; required for :meth:`scan_file`.
        validation_enabled: Reconcile uploads against their records.
        scanning_enabled: Require a clean scan before ``Available``.
        max_file_size_bytes: Upper bound on declared upload sizes; ``0``
            disables the check.
        presigned_url_expiration: Default lifetime of presigned download URLs.
    """

    def __init__(
        self,
        repository: FileRecordRepository,
        storage: ObjectStorage,
        publisher: EventPublisher | None = None,
        *,
        scan_client: ScanClient | None = None,
        validation_enabled: bool = True,
        scanning_enabled: bool = False,
        max_file_size_bytes: int = 0,
        presigned_url_expiration: timedelta = timedelta(hours=1),
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._publisher = publisher
        self._scan_client = scan_client
        self._validation_enabled = validation_enabled
        self._scanning_enabled = scanning_enabled
        self._max_file_size = max_file_size_bytes
        self._presigned_expiration = presigned_url_expiration
        self.reconciler = Reconciler(
            repository,
            storage,
            validation_enabled=validation_enabled,
            scanning_enabled=scanning_enabled,
            max_file_size_bytes=max_file_size_bytes,
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload_file(self, request: UploadRequest) -> FileRecord:
        """Register *request* as a new file and stream its bytes to storage.

        Raises:
            ValueError: Blank name or content type, or a declared size over
                the configured limit.
            DuplicateContentError: ``request.hash`` matches an existing file.
                Raised before anything is written.
            StorageProviderError: The byte upload failed.  The record stays
                ``Pending``.
        """
        self._check_request(request.file_name, request.content_type, request.size)
        if request.hash and await self._repository.exists_by_hash(request.hash):
            existing = await self._repository.get_by_hash(request.hash)
            raise DuplicateContentError(request.hash, existing.id if existing else None)

        record = FileRecord.create(
            file_name=request.file_name,
            path=request.path,
            size=request.size,
            content_type=request.content_type,
            provider=self._storage.provider,
            hash=request.hash,
            validation_enabled=self._validation_enabled,
            scanning_enabled=self._scanning_enabled,
        )
        await self._persist_new(record)

        try:
            await self._storage.upload(record.storage_key, request)
        except StorageProviderError:
            logger.error("Upload of %s failed; record %s left Pending", record.storage_key, record.id)
            raise
        except Exception as exc:
            logger.error("Upload of %s failed; record %s left Pending", record.storage_key, record.id)
            raise StorageProviderError(
                "upload", record.storage_key, f"file {record.id}: {exc}"
            ) from exc

        file_operations_total.labels(operation="upload").inc()
        logger.info(
            json.dumps({
                "event": "file_uploaded",
                "file_id": str(record.id),
                "storage_key": record.storage_key,
                "size": record.size,
                "status": record.status.value,
            })
        )
        await self._deliver_events([record])
        return record

    async def generate_presigned_upload_url(self, request: PresignedUploadRequest) -> str:
        """Register a file for a client-direct upload and return the PUT URL.

        The record is persisted with ``size = request.max_size or 0``; the
        real size arrives with the upload notification.
        """
        size = request.max_size or 0
        self._check_request(request.file_name, request.content_type, size)
        if request.expires_in <= timedelta(0):
            raise ValueError("expires_in must be positive")

        record = FileRecord.create(
            file_name=request.file_name,
            path=request.path,
            size=size,
            content_type=request.content_type,
            provider=self._storage.provider,
            validation_enabled=self._validation_enabled,
            scanning_enabled=self._scanning_enabled,
        )
        await self._persist_new(record)

        url = await self._storage_call(
            "presign_upload", record.storage_key, self._storage.presign_upload(record.storage_key, request)
        )
        file_operations_total.labels(operation="presign_upload").inc()
        await self._deliver_events([record])
        return url

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download_file(self, file_id: uuid.UUID) -> bytes:
        record = await self._require(file_id)
        return await self._download(record)

    async def download_file_by_key(self, storage_key: str) -> bytes:
        record = await self._repository.get_by_storage_key(storage_key)
        if record is None:
            raise RecordNotFoundError(storage_key=storage_key)
        return await self._download(record)

    async def generate_presigned_download_url(
        self,
        file_id: uuid.UUID,
        expires_in: timedelta | None = None,
    ) -> str:
        record = await self._require(file_id)
        self._ensure_servable(record)
        url = await self._storage_call(
            "presign_download",
            record.storage_key,
            self._storage.presign_download(
                record.storage_key, expires_in or self._presigned_expiration
            ),
        )
        file_operations_total.labels(operation="presign_download").inc()
        return url

    async def _download(self, record: FileRecord) -> bytes:
        self._ensure_servable(record)
        content = await self._storage_call(
            "download", record.storage_key, self._storage.download(record.storage_key)
        )
        file_operations_total.labels(operation="download").inc()
        return content

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_file(self, file_id: uuid.UUID) -> FileRecord | None:
        return await self._repository.get_by_id(file_id)

    async def get_file_by_key(self, storage_key: str) -> FileRecord | None:
        return await self._repository.get_by_storage_key(storage_key)

    async def get_file_by_hash(self, content_hash: str) -> FileRecord | None:
        return await self._repository.get_by_hash(content_hash)

    async def get_files_by_status(self, status: FileStatus) -> list[FileRecord]:
        return await self._repository.get_by_status(status)

    async def get_pending_files(self) -> list[FileRecord]:
        return await self._repository.get_pending()

    async def get_files_by_provider(self, provider: StorageProvider) -> list[FileRecord]:
        return await self._repository.get_by_provider(provider)

    async def get_files_uploaded_between(
        self, start: datetime, end: datetime
    ) -> list[FileRecord]:
        return await self._repository.get_by_upload_date_range(start, end)

    async def file_exists(self, file_id: uuid.UUID) -> bool:
        return await self._repository.get_by_id(file_id) is not None

    async def file_exists_by_hash(self, content_hash: str) -> bool:
        return await self._repository.exists_by_hash(content_hash)

    # ------------------------------------------------------------------
    # Reconciliation and scanning
    # ------------------------------------------------------------------

    async def reconcile(self, storage_key: str, actual: ObjectMetadata) -> ReconcileResult:
        """Handle an upload notification; see :class:`Reconciler`."""
        result = await self.reconciler.reconcile(storage_key, actual)
        if result.outcome in (ReconcileOutcome.ACCEPTED, ReconcileOutcome.REJECTED):
            await self._deliver_events([result.record])
        return result

    async def scan_file(self, storage_key: str) -> FileRecord:
        """Scan an ``Uploaded`` object and make it ``Available`` or ``Rejected``.

        Raises:
            RecordNotFoundError: No record for *storage_key*.
            InvalidStateTransition: The record is not awaiting a scan.
            ScanFailedError: The scanner could not produce a verdict.  The
                record is left ``Uploaded``; it is never treated as clean.
        """
        if self._scan_client is None:
            raise RuntimeError("scan_file requires a scan client")

        record = await self._repository.get_by_storage_key(storage_key)
        if record is None:
            raise RecordNotFoundError(storage_key=storage_key)
        if record.status is not FileStatus.UPLOADED:
            raise InvalidStateTransition(record.status, FileStatus.AVAILABLE)

        content = await self._storage_call("download", storage_key, self._storage.download(storage_key))
        result = await self._scan_client.scan(io.BytesIO(content), record.file_name)

        if result.is_clean:
            record.mark_scanned()
        elif result.threat_name == FILE_TOO_LARGE:
            record.reject("file too large to scan")
        else:
            record.reject(f"malware detected: {result.threat_name}")

        await self._save(record, "scan")
        if not result.is_clean:
            await self._remove_quietly(storage_key)
        file_operations_total.labels(operation="scan").inc()
        logger.info(
            json.dumps({
                "event": "file_scanned",
                "file_id": str(record.id),
                "storage_key": storage_key,
                "is_clean": result.is_clean,
                "threat_name": result.threat_name,
                "status": record.status.value,
            })
        )
        await self._deliver_events([record])
        return record

    # ------------------------------------------------------------------
    # Manual transitions
    # ------------------------------------------------------------------

    async def mark_validated(self, file_id: uuid.UUID) -> FileRecord:
        record = await self._require(file_id)
        record.mark_validated()
        await self._save(record, "mark_validated")
        file_operations_total.labels(operation="validate").inc()
        await self._deliver_events([record])
        return record

    async def mark_scanned(self, file_id: uuid.UUID) -> FileRecord:
        record = await self._require(file_id)
        record.mark_scanned()
        await self._save(record, "mark_scanned")
        file_operations_total.labels(operation="scan").inc()
        await self._deliver_events([record])
        return record

    async def reject_file(self, file_id: uuid.UUID, reason: str) -> FileRecord:
        record = await self._require(file_id)
        record.reject(reason)
        await self._save(record, "reject")
        file_operations_total.labels(operation="reject").inc()
        await self._deliver_events([record])
        return record

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def delete_file(self, file_id: uuid.UUID) -> None:
        """Remove the object from storage and tombstone its record.

        Raises:
            RecordNotFoundError: Unknown *file_id*.
            InvalidStateTransition: The record is already deleted.
            StorageProviderError: Storage refused the delete; nothing was
                committed.
        """
        record = await self._require(file_id)
        record.mark_deleted()
        try:
            await self._storage_call("remove", record.storage_key, self._storage.remove(record.storage_key))
            await self._repository.update(record)
            await self._repository.commit()
        except Exception:
            await self._repository.rollback()
            raise
        file_operations_total.labels(operation="delete").inc()
        logger.info(
            json.dumps({
                "event": "file_deleted",
                "file_id": str(record.id),
                "storage_key": record.storage_key,
            })
        )
        await self._deliver_events([record])

    async def delete_files(self, file_ids: Iterable[uuid.UUID]) -> None:
        """Delete several files as one unit of work.

        Every id is resolved first, so an unknown id aborts the batch before
        anything is touched.  Objects are removed with a single batch call;
        if that (or any later step before the commit) fails the transaction
        is rolled back and no tombstone is persisted.
        """
        records: list[FileRecord] = []
        for file_id in file_ids:
            records.append(await self._require(file_id))
        if not records:
            return

        for record in records:
            record.mark_deleted()
        keys = [record.storage_key for record in records]
        try:
            await self._storage_call("remove_batch", None, self._storage.remove_batch(keys))
            for record in records:
                await self._repository.update(record)
            await self._repository.commit()
        except Exception:
            logger.warning("Batch delete of %d file(s) failed; rolling back", len(records))
            await self._repository.rollback()
            raise

        file_operations_total.labels(operation="delete_batch").inc()
        logger.info(json.dumps({"event": "files_deleted", "count": len(records), "storage_keys": keys}))
        await self._deliver_events(records)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_request(self, file_name: str, content_type: str, size: int) -> None:
        if not file_name or not file_name.strip():
            raise ValueError("file_name must not be blank")
        if not content_type or not content_type.strip():
            raise ValueError("content_type must not be blank")
        if size < 0:
            raise ValueError("size must be >= 0")
        if self._max_file_size > 0 and size > self._max_file_size:
            raise ValueError(
                f"size exceeds limit: {size} bytes > {self._max_file_size} bytes"
            )

    async def _require(self, file_id: uuid.UUID) -> FileRecord:
        record = await self._repository.get_by_id(file_id)
        if record is None:
            raise RecordNotFoundError(file_id=file_id)
        return record

    @staticmethod
    def _ensure_servable(record: FileRecord) -> None:
        if not record.can_serve():
            status = "Deleted" if record.is_deleted else record.status
            raise FileNotAvailableError(record.id, status)

    async def _persist_new(self, record: FileRecord) -> None:
        try:
            await self._repository.add(record)
            await self._repository.commit()
        except PersistenceError:
            await self._repository.rollback()
            raise
        except Exception as exc:
            await self._repository.rollback()
            raise PersistenceError(f"persisting new file {record.storage_key} failed: {exc}") from exc

    async def _save(self, record: FileRecord, step: str) -> None:
        try:
            await self._repository.update(record)
            await self._repository.commit()
        except PersistenceError:
            await self._repository.rollback()
            raise
        except Exception as exc:
            await self._repository.rollback()
            raise PersistenceError(f"{step} failed for file {record.id}: {exc}") from exc

    @staticmethod
    async def _storage_call(operation: str, storage_key: str | None, awaitable):
        try:
            return await awaitable
        except StorageProviderError:
            raise
        except Exception as exc:
            raise StorageProviderError(operation, storage_key, str(exc)) from exc

    async def _remove_quietly(self, storage_key: str) -> None:
        try:
            await self._storage.remove(storage_key)
        except Exception as exc:
            logger.warning("Failed to delete infected object %s: %r", storage_key, exc)

    async def _deliver_events(self, records: Sequence[FileRecord]) -> None:
        """Publish committed events, then mark them delivered in the outbox."""
        if self._publisher is None:
            return
        events = [event for record in records for event in record.pending_events]
        if not events:
            return
        event_ids = [event.event_id for event in events]
        try:
            await self._publisher.publish(events)
        except Exception as exc:
            logger.warning(
                "Publishing %d lifecycle event(s) failed; left in outbox: %r", len(events), exc
            )
            return
        try:
            await self._repository.mark_events_delivered(event_ids)
            await self._repository.commit()
        except Exception as exc:
            await self._repository.rollback()
            logger.warning("Could not mark %d event(s) delivered: %r", len(event_ids), exc)
            return
        for record in records:
            record.events_delivered(event_ids)
