"""Collaborator interfaces consumed by the lifecycle core.

The core never talks to a concrete storage backend, database or message
broker.  It depends only on the abstract classes below; concrete
implementations (:class:`~filekeeper.services.storage.MinioObjectStorage`,
:class:`~filekeeper.services.repository.SqlAlchemyFileRecordRepository`,
:class:`~filekeeper.services.publisher.LoggingEventPublisher`) are injected
at construction time.  Tests substitute ``AsyncMock`` objects.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import BinaryIO, Iterable, Sequence

from filekeeper.core.events import LifecycleEvent
from filekeeper.core.file_record import FileRecord, FileStatus, StorageProvider
from filekeeper.core.metadata import ObjectMetadata

# ---------------------------------------------------------------------------
# Request / result DTOs
# ---------------------------------------------------------------------------


@dataclass
class UploadRequest:
    """Bytes plus the attributes a client declares for them."""

    content: BinaryIO
    path: str
    file_name: str
    content_type: str
    size: int
    hash: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PresignedUploadRequest:
    path: str
    file_name: str
    content_type: str
    expires_in: timedelta
    max_size: int | None = None


@dataclass(frozen=True)
class UploadResult:
    storage_key: str
    etag: str
    size: int
    version_id: str | None = None


# ---------------------------------------------------------------------------
# Storage collaborator
# ---------------------------------------------------------------------------


class ObjectStorage(ABC):
    """Provider-agnostic object storage operations."""

    @property
    @abstractmethod
    def provider(self) -> StorageProvider:
        """Tag recorded on every file stored through this backend."""

    @abstractmethod
    async def upload(self, storage_key: str, request: UploadRequest) -> UploadResult:
        """Store ``request.content`` under *storage_key*."""

    @abstractmethod
    async def download(self, storage_key: str) -> bytes:
        """Return the full object body."""

    @abstractmethod
    async def remove(self, storage_key: str) -> None:
        """Delete a single object."""

    @abstractmethod
    async def remove_batch(self, storage_keys: Sequence[str]) -> None:
        """Delete many objects in one call.

        Backends without native batch deletes iterate and must report every
        key that failed, not just the first.
        """

    @abstractmethod
    async def get_metadata(self, storage_key: str) -> ObjectMetadata:
        """Return the complete metadata of a stored object."""

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        ...

    @abstractmethod
    async def health(self) -> bool:
        """Return ``True`` if the backend is reachable.  Must never raise."""

    @abstractmethod
    async def presign_upload(self, storage_key: str, request: PresignedUploadRequest) -> str:
        ...

    @abstractmethod
    async def presign_download(self, storage_key: str, expires_in: timedelta) -> str:
        ...


# ---------------------------------------------------------------------------
# Persistence collaborator
# ---------------------------------------------------------------------------


class FileRecordRepository(ABC):
    """Durable store for :class:`~filekeeper.core.file_record.FileRecord`.

    Implementations serialise concurrent updates to the same record (row
    locks or an optimistic version check) and raise
    :class:`~filekeeper.core.errors.ConcurrentModificationError` when an
    update loses the race.  Pending lifecycle events of added or updated
    records are stored in the same transaction.
    """

    @abstractmethod
    async def get_by_id(self, file_id: uuid.UUID) -> FileRecord | None:
        ...

    @abstractmethod
    async def get_by_storage_key(self, storage_key: str) -> FileRecord | None:
        ...

    @abstractmethod
    async def get_by_hash(self, content_hash: str) -> FileRecord | None:
        ...

    @abstractmethod
    async def exists_by_hash(self, content_hash: str) -> bool:
        ...

    @abstractmethod
    async def exists_by_storage_key(self, storage_key: str) -> bool:
        ...

    @abstractmethod
    async def get_by_status(self, status: FileStatus) -> list[FileRecord]:
        """Records in *status*, newest upload first."""

    @abstractmethod
    async def get_by_provider(self, provider: StorageProvider) -> list[FileRecord]:
        """Records stored through *provider*, newest upload first."""

    @abstractmethod
    async def get_by_upload_date_range(
        self, start: datetime, end: datetime
    ) -> list[FileRecord]:
        """Records uploaded between *start* and *end* inclusive, newest first."""

    @abstractmethod
    async def get_pending(self) -> list[FileRecord]:
        """``Pending`` and ``Uploaded`` records, oldest upload first."""

    @abstractmethod
    async def add(self, record: FileRecord) -> None:
        ...

    @abstractmethod
    async def update(self, record: FileRecord) -> None:
        ...

    @abstractmethod
    async def mark_events_delivered(self, event_ids: Iterable[uuid.UUID]) -> None:
        ...

    @abstractmethod
    async def begin(self) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Event publisher
# ---------------------------------------------------------------------------


class EventPublisher(ABC):
    """Delivers committed lifecycle events to the outside world.

    Called only after the state change has been committed.  Delivery is
    at-least-once at best; consumers should be idempotent on ``event_id``.
    """

    @abstractmethod
    async def publish(self, events: Sequence[LifecycleEvent]) -> None:
        ...
