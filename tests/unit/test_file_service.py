"""Unit tests for the FileService orchestrator.

Collaborators are :class:`unittest.mock.AsyncMock` objects specced on the
core interfaces.  A shared ``calls`` list records the order in which
repository and storage methods run so the sequencing guarantees (persist
before upload, publish after commit) can be asserted directly.
"""

from __future__ import annotations

import io
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from filekeeper.core.errors import (
    ConcurrentModificationError,
    DuplicateContentError,
    FileNotAvailableError,
    InvalidStateTransition,
    RecordNotFoundError,
    ScanFailedError,
    StorageProviderError,
)
from filekeeper.core.events import FileDeleted, FileUploaded
from filekeeper.core.file_record import FileStatus, StorageProvider
from filekeeper.core.interfaces import (
    EventPublisher,
    FileRecordRepository,
    ObjectStorage,
    PresignedUploadRequest,
    UploadRequest,
    UploadResult,
)
from filekeeper.core.reconciler import ReconcileOutcome
from filekeeper.core.scan_client import FILE_TOO_LARGE, ScanClient
from filekeeper.core.scan_result import ScanResult
from filekeeper.services.file_service import FileService


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def calls() -> list[str]:
    return []


def _track(mock: AsyncMock, name: str, calls: list[str]) -> None:
    async def _record(*args, **kwargs):
        calls.append(name)
        return mock.return_value

    mock.side_effect = _record


@pytest.fixture
def repository(calls) -> AsyncMock:
    repo = AsyncMock(spec=FileRecordRepository)
    repo.exists_by_hash.return_value = False
    for name in ("add", "update", "commit", "rollback", "mark_events_delivered"):
        _track(getattr(repo, name), f"repo.{name}", calls)
    return repo


@pytest.fixture
def storage(calls) -> AsyncMock:
    store = AsyncMock(spec=ObjectStorage)
    store.provider = StorageProvider.MINIO
    store.upload.return_value = UploadResult(storage_key="docs/report.pdf", etag="etag", size=5)
    for name in ("upload", "remove", "remove_batch"):
        _track(getattr(store, name), f"storage.{name}", calls)
    return store


@pytest.fixture
def publisher(calls) -> AsyncMock:
    pub = AsyncMock(spec=EventPublisher)
    _track(pub.publish, "publisher.publish", calls)
    return pub


@pytest.fixture
def scanner() -> AsyncMock:
    return AsyncMock(spec=ScanClient)


@pytest.fixture
def service(repository, storage, publisher, scanner) -> FileService:
    return FileService(
        repository,
        storage,
        publisher,
        scan_client=scanner,
        validation_enabled=True,
        scanning_enabled=False,
        max_file_size_bytes=10_000,
    )


def _upload_request(**overrides) -> UploadRequest:
    kwargs = dict(
        content=io.BytesIO(b"%PDF-"),
        path="docs",
        file_name="report.pdf",
        content_type="application/pdf",
        size=5,
    )
    kwargs.update(overrides)
    return UploadRequest(**kwargs)


# ---------------------------------------------------------------------------
# upload_file
# ---------------------------------------------------------------------------


class TestUploadFile:
    async def test_record_committed_before_bytes_uploaded(self, service, calls) -> None:
        record = await service.upload_file(_upload_request())

        assert calls.index("repo.commit") < calls.index("storage.upload")
        assert calls[:3] == ["repo.add", "repo.commit", "storage.upload"]
        assert record.status is FileStatus.PENDING
        assert record.storage_key == "docs/report.pdf"
        assert record.provider is StorageProvider.MINIO

    async def test_events_published_after_commit_and_marked_delivered(
        self, service, publisher, repository, calls
    ) -> None:
        record = await service.upload_file(_upload_request())

        (events,) = publisher.publish.await_args.args
        assert [type(e) for e in events] == [FileUploaded]
        assert calls.index("publisher.publish") > calls.index("storage.upload")
        repository.mark_events_delivered.assert_awaited_once_with([events[0].event_id])
        assert record.pending_events == ()

    async def test_duplicate_hash_raises_before_any_write(
        self, service, repository, storage, record_factory
    ) -> None:
        existing = record_factory(status=FileStatus.AVAILABLE, content_hash="abc123")
        repository.exists_by_hash.return_value = True
        repository.get_by_hash.return_value = existing

        with pytest.raises(DuplicateContentError) as exc_info:
            await service.upload_file(_upload_request(hash="abc123"))

        assert exc_info.value.hash == "abc123"
        assert exc_info.value.existing_id == existing.id
        repository.add.assert_not_awaited()
        storage.upload.assert_not_awaited()

    async def test_upload_failure_wrapped_and_record_left_pending(
        self, service, storage, repository, publisher
    ) -> None:
        storage.upload.side_effect = OSError("connection reset")

        with pytest.raises(StorageProviderError) as exc_info:
            await service.upload_file(_upload_request())

        assert exc_info.value.operation == "upload"
        assert exc_info.value.storage_key == "docs/report.pdf"
        assert isinstance(exc_info.value.__cause__, OSError)
        repository.commit.assert_awaited_once()
        publisher.publish.assert_not_awaited()

    async def test_oversized_declared_size_refused(self, service, repository) -> None:
        with pytest.raises(ValueError):
            await service.upload_file(_upload_request(size=10_001))
        repository.add.assert_not_awaited()

    async def test_available_immediately_when_nothing_to_check(
        self, repository, storage, publisher
    ) -> None:
        service = FileService(
            repository, storage, publisher, validation_enabled=False, scanning_enabled=False
        )
        record = await service.upload_file(_upload_request())
        assert record.status is FileStatus.AVAILABLE

    async def test_publisher_failure_leaves_events_pending(
        self, service, publisher, repository
    ) -> None:
        publisher.publish.side_effect = ConnectionError("broker down")

        record = await service.upload_file(_upload_request())

        assert len(record.pending_events) == 1
        repository.mark_events_delivered.assert_not_awaited()

    async def test_no_publisher_keeps_events_queued(self, repository, storage) -> None:
        record = await FileService(repository, storage).upload_file(_upload_request())
        assert len(record.pending_events) == 1


# ---------------------------------------------------------------------------
# Presigned URLs
# ---------------------------------------------------------------------------


class TestPresignedUrls:
    async def test_presigned_upload_persists_placeholder_first(
        self, service, storage, repository, calls
    ) -> None:
        storage.presign_upload.return_value = "https://minio/put"
        request = PresignedUploadRequest(
            path="uploads",
            file_name="photo.png",
            content_type="image/png",
            expires_in=timedelta(minutes=15),
        )

        url = await service.generate_presigned_upload_url(request)

        assert url == "https://minio/put"
        (record,) = repository.add.await_args.args
        assert record.size == 0
        assert record.storage_key == "uploads/photo.png"
        storage.presign_upload.assert_awaited_once_with("uploads/photo.png", request)
        assert calls[:2] == ["repo.add", "repo.commit"]

    async def test_presigned_download_for_available_file(
        self, service, storage, repository, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.AVAILABLE)
        repository.get_by_id.return_value = record
        storage.presign_download.return_value = "https://minio/get"

        url = await service.generate_presigned_download_url(record.id)

        assert url == "https://minio/get"
        storage.presign_download.assert_awaited_once_with(record.storage_key, timedelta(hours=1))

    async def test_presigned_download_refused_when_not_servable(
        self, service, storage, repository, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.PENDING)
        repository.get_by_id.return_value = record

        with pytest.raises(FileNotAvailableError):
            await service.generate_presigned_download_url(record.id, timedelta(minutes=5))
        storage.presign_download.assert_not_awaited()


# ---------------------------------------------------------------------------
# Downloads and queries
# ---------------------------------------------------------------------------


class TestDownloads:
    async def test_download_available_file(self, service, storage, repository, record_factory) -> None:
        record = record_factory(status=FileStatus.AVAILABLE)
        repository.get_by_id.return_value = record
        storage.download.return_value = b"%PDF-"

        assert await service.download_file(record.id) == b"%PDF-"

    async def test_download_unknown_id(self, service, repository) -> None:
        repository.get_by_id.return_value = None
        with pytest.raises(RecordNotFoundError):
            await service.download_file(uuid.uuid4())

    async def test_download_by_key_unknown(self, service, repository) -> None:
        repository.get_by_storage_key.return_value = None
        with pytest.raises(RecordNotFoundError) as exc_info:
            await service.download_file_by_key("nope.pdf")
        assert exc_info.value.storage_key == "nope.pdf"

    @pytest.mark.parametrize("status", [FileStatus.PENDING, FileStatus.UPLOADED, FileStatus.REJECTED])
    async def test_download_refused_unless_available(
        self, service, storage, repository, record_factory, status
    ) -> None:
        record = record_factory(status=status)
        repository.get_by_storage_key.return_value = record

        with pytest.raises(FileNotAvailableError) as exc_info:
            await service.download_file_by_key(record.storage_key)

        assert exc_info.value.status is status
        storage.download.assert_not_awaited()

    async def test_download_refused_for_deleted_file(
        self, service, storage, repository, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.AVAILABLE)
        record.mark_deleted()
        repository.get_by_id.return_value = record

        with pytest.raises(FileNotAvailableError):
            await service.download_file(record.id)

    async def test_queries_delegate_to_repository(self, service, repository, record_factory) -> None:
        record = record_factory()
        repository.get_by_id.return_value = record
        repository.get_pending.return_value = [record]
        repository.exists_by_hash.return_value = True

        assert await service.get_file(record.id) is record
        assert await service.file_exists(record.id) is True
        assert await service.get_pending_files() == [record]
        assert await service.file_exists_by_hash("abc") is True

    async def test_provider_and_date_range_queries_delegate(
        self, service, repository, record_factory
    ) -> None:
        record = record_factory()
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 2, 1, tzinfo=timezone.utc)
        repository.get_by_provider.return_value = [record]
        repository.get_by_upload_date_range.return_value = [record]

        assert await service.get_files_by_provider(StorageProvider.MINIO) == [record]
        assert await service.get_files_uploaded_between(start, end) == [record]
        repository.get_by_provider.assert_awaited_once_with(StorageProvider.MINIO)
        repository.get_by_upload_date_range.assert_awaited_once_with(start, end)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    async def test_accepted_outcome_publishes_events(
        self, service, repository, publisher, pending_record, metadata_factory
    ) -> None:
        repository.get_by_storage_key.return_value = pending_record

        result = await service.reconcile(pending_record.storage_key, metadata_factory())

        assert result.outcome is ReconcileOutcome.ACCEPTED
        publisher.publish.assert_awaited_once()

    async def test_not_found_publishes_nothing(self, service, repository, publisher, metadata_factory) -> None:
        repository.get_by_storage_key.return_value = None

        result = await service.reconcile("ghost.pdf", metadata_factory())

        assert result.outcome is ReconcileOutcome.NOT_FOUND
        publisher.publish.assert_not_awaited()


# ---------------------------------------------------------------------------
# scan_file
# ---------------------------------------------------------------------------


class TestScanFile:
    async def test_clean_scan_makes_file_available(
        self, service, repository, storage, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        storage.download.return_value = b"clean bytes"
        scanner.scan.return_value = ScanResult(is_clean=True)

        result = await service.scan_file(record.storage_key)

        assert result.status is FileStatus.AVAILABLE
        assert result.scanned_at is not None
        stream, name = scanner.scan.await_args.args
        assert stream.read() == b"clean bytes"
        assert name == "report.pdf"
        storage.remove.assert_not_awaited()

    async def test_infected_file_rejected_and_removed(
        self, service, repository, storage, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        storage.download.return_value = b"X5O!P%@AP"
        scanner.scan.return_value = ScanResult(is_clean=False, threat_name="Eicar-Test-Signature")

        result = await service.scan_file(record.storage_key)

        assert result.status is FileStatus.REJECTED
        assert result.rejection_reason == "malware detected: Eicar-Test-Signature"
        storage.remove.assert_awaited_once_with(record.storage_key)

    async def test_infected_object_removed_after_commit(
        self, service, repository, storage, scanner, record_factory, calls
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        storage.download.return_value = b"X5O!P%@AP"
        scanner.scan.return_value = ScanResult(is_clean=False, threat_name="Eicar-Test-Signature")

        await service.scan_file(record.storage_key)

        assert calls.index("repo.commit") < calls.index("storage.remove")

    async def test_lost_race_keeps_object(
        self, service, repository, storage, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        repository.update.side_effect = ConcurrentModificationError(record.id, 0)
        storage.download.return_value = b"X5O!P%@AP"
        scanner.scan.return_value = ScanResult(is_clean=False, threat_name="Eicar-Test-Signature")

        with pytest.raises(ConcurrentModificationError):
            await service.scan_file(record.storage_key)

        storage.remove.assert_not_awaited()

    async def test_oversized_file_rejected_with_size_reason(
        self, service, repository, storage, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        storage.download.return_value = b"x" * 20
        scanner.scan.return_value = ScanResult(is_clean=False, threat_name=FILE_TOO_LARGE)

        result = await service.scan_file(record.storage_key)

        assert result.status is FileStatus.REJECTED
        assert result.rejection_reason == "file too large to scan"
        storage.remove.assert_awaited_once_with(record.storage_key)

    async def test_scan_failure_never_treated_as_clean(
        self, service, repository, storage, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_storage_key.return_value = record
        storage.download.return_value = b"bytes"
        scanner.scan.side_effect = ScanFailedError("report.pdf", 4)

        with pytest.raises(ScanFailedError):
            await service.scan_file(record.storage_key)

        assert record.status is FileStatus.UPLOADED
        repository.update.assert_not_awaited()

    async def test_pending_record_cannot_be_scanned(
        self, service, repository, scanner, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.PENDING)
        repository.get_by_storage_key.return_value = record

        with pytest.raises(InvalidStateTransition):
            await service.scan_file(record.storage_key)
        scanner.scan.assert_not_awaited()


# ---------------------------------------------------------------------------
# Manual transitions
# ---------------------------------------------------------------------------


class TestManualTransitions:
    async def test_reject_file(self, service, repository, record_factory) -> None:
        record = record_factory(status=FileStatus.UPLOADED)
        repository.get_by_id.return_value = record

        await service.reject_file(record.id, "operator decision")

        assert record.status is FileStatus.REJECTED
        repository.update.assert_awaited_once_with(record)

    async def test_mark_validated_on_terminal_record_raises(
        self, service, repository, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.REJECTED)
        repository.get_by_id.return_value = record

        with pytest.raises(InvalidStateTransition):
            await service.mark_validated(record.id)
        repository.update.assert_not_awaited()


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


class TestDelete:
    async def test_delete_file_removes_then_commits(
        self, service, repository, storage, publisher, record_factory, calls
    ) -> None:
        record = record_factory(status=FileStatus.AVAILABLE)
        repository.get_by_id.return_value = record

        await service.delete_file(record.id)

        assert calls[:3] == ["storage.remove", "repo.update", "repo.commit"]
        (events,) = publisher.publish.await_args.args
        assert isinstance(events[0], FileDeleted)
        assert record.is_deleted

    async def test_delete_file_storage_failure_rolls_back(
        self, service, repository, storage, publisher, record_factory
    ) -> None:
        record = record_factory(status=FileStatus.AVAILABLE)
        repository.get_by_id.return_value = record
        storage.remove.side_effect = RuntimeError("bucket locked")

        with pytest.raises(StorageProviderError):
            await service.delete_file(record.id)

        repository.rollback.assert_awaited_once()
        repository.commit.assert_not_awaited()
        publisher.publish.assert_not_awaited()

    async def test_batch_delete_uses_single_storage_call(
        self, service, repository, storage, publisher, record_factory, calls
    ) -> None:
        records = [record_factory(file_name=f"f{i}.pdf", status=FileStatus.AVAILABLE) for i in range(3)]
        repository.get_by_id.side_effect = records

        await service.delete_files([r.id for r in records])

        storage.remove_batch.assert_awaited_once_with([r.storage_key for r in records])
        assert repository.update.await_count == 3
        assert calls.index("repo.commit") < calls.index("publisher.publish")
        (events,) = publisher.publish.await_args.args
        assert len(events) == 3

    async def test_batch_delete_storage_failure_rolls_back_everything(
        self, service, repository, storage, publisher, record_factory
    ) -> None:
        records = [record_factory(file_name=f"f{i}.pdf", status=FileStatus.AVAILABLE) for i in range(2)]
        repository.get_by_id.side_effect = records
        storage.remove_batch.side_effect = StorageProviderError("remove_batch", None, "1 of 2 failed")

        with pytest.raises(StorageProviderError):
            await service.delete_files([r.id for r in records])

        repository.update.assert_not_awaited()
        repository.commit.assert_not_awaited()
        repository.rollback.assert_awaited_once()
        publisher.publish.assert_not_awaited()

    async def test_batch_delete_unknown_id_aborts_before_storage(
        self, service, repository, storage, record_factory
    ) -> None:
        repository.get_by_id.side_effect = [record_factory(status=FileStatus.AVAILABLE), None]

        with pytest.raises(RecordNotFoundError):
            await service.delete_files([uuid.uuid4(), uuid.uuid4()])

        storage.remove_batch.assert_not_awaited()
