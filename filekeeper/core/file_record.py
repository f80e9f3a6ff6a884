"""FileRecord aggregate and its lifecycle state machine.

A :class:`FileRecord` tracks one logical uploaded object from the moment it
is registered until it is either downloadable (``Available``) or refused
(``Rejected``)::

    Pending ──► Uploaded ──► Available
       │            │
       ├────────────┴──────► Rejected
       └──────────────────► Available   (validation only, no scan)

``Available`` and ``Rejected`` are terminal.  The only way to change
``status`` is through the transition methods below; each of them checks
:data:`ALLOWED_TRANSITIONS`, records the lifecycle event it raised in
:attr:`FileRecord.pending_events` and returns that event to the caller.

Deletion is tracked on a separate axis: :meth:`FileRecord.mark_deleted`
stamps ``deleted_at`` without touching ``status``, so a removed object can
still be told apart from one that is present in storage.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Iterable

from filekeeper.core.errors import InvalidStateTransition
from filekeeper.core.events import (
    FileDeleted,
    FileRejected,
    FileScanned,
    FileUploaded,
    FileValidated,
    LifecycleEvent,
)


class FileStatus(str, enum.Enum):
    """Lifecycle status of a file record."""

    PENDING = "Pending"
    UPLOADED = "Uploaded"
    AVAILABLE = "Available"
    REJECTED = "Rejected"


class StorageProvider(str, enum.Enum):
    """Storage backend that owns an object.  Opaque to the lifecycle core."""

    MINIO = "minio"
    SEAWEEDFS = "seaweedfs"
    S3 = "s3"


ALLOWED_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.PENDING: frozenset(
        {FileStatus.UPLOADED, FileStatus.AVAILABLE, FileStatus.REJECTED}
    ),
    FileStatus.UPLOADED: frozenset({FileStatus.AVAILABLE, FileStatus.REJECTED}),
    FileStatus.AVAILABLE: frozenset(),
    FileStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

_DELETED = "Deleted"


def build_storage_key(path: str, file_name: str) -> str:
    """Return the backend-relative key for *file_name* stored under *path*.

    Leading and trailing ``/`` are stripped from *path*; an empty path yields
    the bare file name.
    """
    clean_path = path.strip("/")
    if not clean_path.strip():
        return file_name
    return f"{clean_path}/{file_name}"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class FileRecord:
    """Aggregate root for an uploaded object.

    Use :meth:`create` for new files.  The plain constructor rehydrates a
    record from persistence and raises no events.
    """

    def __init__(
        self,
        *,
        id: uuid.UUID,
        file_name: str,
        path: str,
        storage_key: str,
        size: int,
        content_type: str,
        provider: StorageProvider,
        status: FileStatus,
        uploaded_at: datetime,
        hash: str | None = None,
        validated_at: datetime | None = None,
        scanned_at: datetime | None = None,
        rejection_reason: str | None = None,
        deleted_at: datetime | None = None,
        version: int = 0,
        pending_events: Iterable[LifecycleEvent] = (),
    ) -> None:
        if size < 0:
            raise ValueError("size must be >= 0")
        self._id = id
        self._storage_key = storage_key
        self.file_name = file_name
        self.path = path
        self.size = size
        self.content_type = content_type
        self.provider = StorageProvider(provider)
        self.hash = hash
        self._status = FileStatus(status)
        self.uploaded_at = uploaded_at
        self.validated_at = validated_at
        self.scanned_at = scanned_at
        self.rejection_reason = rejection_reason
        self.deleted_at = deleted_at
        self.version = version
        self._pending_events: list[LifecycleEvent] = list(pending_events)

    @classmethod
    def create(
        cls,
        *,
        file_name: str,
        path: str,
        size: int,
        content_type: str,
        provider: StorageProvider,
        hash: str | None = None,
        validation_enabled: bool = True,
        scanning_enabled: bool = False,
    ) -> FileRecord:
        """Register a new file and queue its ``FileUploaded`` event.

        The record starts ``Available`` when neither validation nor scanning
        is configured, ``Pending`` otherwise.
        """
        if validation_enabled or scanning_enabled:
            status = FileStatus.PENDING
        else:
            status = FileStatus.AVAILABLE
        storage_key = build_storage_key(path, file_name)
        record = cls(
            id=uuid.uuid4(),
            file_name=file_name,
            path=path,
            storage_key=storage_key,
            size=size,
            content_type=content_type,
            provider=provider,
            status=status,
            uploaded_at=_utcnow(),
            hash=hash,
        )
        record._raise(
            FileUploaded(file_id=record.id, storage_key=storage_key, file_name=file_name)
        )
        return record

    # ------------------------------------------------------------------
    # Read-only identity and state
    # ------------------------------------------------------------------

    @property
    def id(self) -> uuid.UUID:
        return self._id

    @property
    def storage_key(self) -> str:
        return self._storage_key

    @property
    def status(self) -> FileStatus:
        return self._status

    @property
    def pending_events(self) -> tuple[LifecycleEvent, ...]:
        """Events raised but not yet delivered, oldest first."""
        return tuple(self._pending_events)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_uploaded(self) -> FileValidated:
        """``Pending → Uploaded``: validated, awaiting a malware scan."""
        self._transition(FileStatus.UPLOADED)
        return self._raise(FileValidated(file_id=self.id, storage_key=self.storage_key))

    def mark_validated(self) -> FileValidated:
        """``Pending → Available`` when no scan is configured."""
        self._transition(FileStatus.AVAILABLE)
        self.validated_at = _utcnow()
        return self._raise(FileValidated(file_id=self.id, storage_key=self.storage_key))

    def mark_scanned(self) -> FileScanned:
        """``→ Available`` after a clean scan."""
        self._transition(FileStatus.AVAILABLE)
        self.scanned_at = _utcnow()
        return self._raise(FileScanned(file_id=self.id, storage_key=self.storage_key))

    def reject(self, reason: str) -> FileRejected:
        """Move a non-terminal record to ``Rejected``.

        Raises:
            ValueError: If *reason* is empty or whitespace.
            InvalidStateTransition: If the record is already terminal.
        """
        if not reason or not reason.strip():
            raise ValueError("Rejection reason cannot be empty")
        self._transition(FileStatus.REJECTED)
        self.rejection_reason = reason
        return self._raise(
            FileRejected(file_id=self.id, storage_key=self.storage_key, reason=reason)
        )

    def mark_deleted(self) -> FileDeleted:
        """Stamp the deletion tombstone; ``status`` is left unchanged."""
        if self.deleted_at is not None:
            raise InvalidStateTransition(self._status, _DELETED)
        self.deleted_at = _utcnow()
        return self._raise(FileDeleted(file_id=self.id, storage_key=self.storage_key))

    def can_serve(self) -> bool:
        """``True`` when a download or download URL may be produced."""
        return self._status is FileStatus.AVAILABLE and self.deleted_at is None

    def events_delivered(self, event_ids: Iterable[uuid.UUID] | None = None) -> None:
        """Drop delivered events; all of them when *event_ids* is ``None``."""
        if event_ids is None:
            self._pending_events.clear()
            return
        delivered = set(event_ids)
        self._pending_events = [e for e in self._pending_events if e.event_id not in delivered]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, target: FileStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self._status]:
            raise InvalidStateTransition(self._status, target)
        self._status = target

    def _raise(self, event):
        self._pending_events.append(event)
        return event

    def __repr__(self) -> str:
        return (
            f"FileRecord(id={self.id}, storage_key={self.storage_key!r}, "
            f"status={self._status.value})"
        )
