"""Exception hierarchy for the file lifecycle core.

Faults that indicate a programming or workflow error
(:class:`InvalidStateTransition`) are raised and never retried.  Transient
scanner failures (:class:`ScanTimeoutError`, :class:`ScanProtocolError`,
:class:`ScanConnectionError`) are retried by the scan client and surface as
:class:`ScanFailedError` once the retry budget is spent.  Validation
failures are not propagated to callers at all: the reconciler turns them into
a ``Rejected`` record.
"""

from __future__ import annotations

import uuid
from typing import Any, Sequence


class FileKeeperError(Exception):
    """Base class for all FileKeeper errors."""


class InvalidStateTransition(FileKeeperError):
    """Raised when a lifecycle transition is not in the transition table.

    Attributes:
        current: Status the record was in.
        target: Status (or ``"Deleted"``) that was requested.
    """

    def __init__(self, current: Any, target: Any) -> None:
        super().__init__(f"Cannot transition from {_label(current)} to {_label(target)}")
        self.current = current
        self.target = target


class ValidationFailed(FileKeeperError):
    """Carries the ordered list of rule violations found during reconciliation."""

    def __init__(self, violations: Sequence[str]) -> None:
        super().__init__("; ".join(violations))
        self.violations = tuple(violations)


# ---------------------------------------------------------------------------
# Scanner errors
# ---------------------------------------------------------------------------


class ScanError(FileKeeperError):
    """Base class for malware-scanner failures."""


class ScanTimeoutError(ScanError):
    """The connect timeout or the overall scan timeout expired.

    Attributes:
        phase: ``"connect"`` or ``"scan"``.
    """

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class ScanProtocolError(ScanError):
    """The daemon answered with something that is neither OK nor FOUND."""

    def __init__(self, message: str, response: str | None = None) -> None:
        super().__init__(message)
        self.response = response


class ScanConnectionError(ScanError):
    """The daemon could not be reached or dropped the connection."""


class ScanFailedError(ScanError):
    """Every scan attempt failed; ``__cause__`` holds the last error."""

    def __init__(self, file_name: str, attempts: int) -> None:
        super().__init__(
            f"Failed to scan file {file_name!r} after {attempts} attempt(s); "
            "the scanner may be unavailable"
        )
        self.file_name = file_name
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Lookup / orchestration errors
# ---------------------------------------------------------------------------


class RecordNotFoundError(FileKeeperError):
    """No file record matches the given storage key or id."""

    def __init__(
        self,
        *,
        storage_key: str | None = None,
        file_id: uuid.UUID | None = None,
    ) -> None:
        if storage_key is not None:
            message = f"File not found: {storage_key}"
        else:
            message = f"File not found with ID: {file_id}"
        super().__init__(message)
        self.storage_key = storage_key
        self.file_id = file_id


class DuplicateContentError(FileKeeperError):
    """A record with the same content hash already exists."""

    def __init__(self, content_hash: str, existing_id: uuid.UUID | None = None) -> None:
        if existing_id is None:
            message = f"A file with hash '{content_hash}' already exists"
        else:
            message = f"A file with hash '{content_hash}' already exists (file id {existing_id})"
        super().__init__(message)
        self.hash = content_hash
        self.existing_id = existing_id


class FileNotAvailableError(FileKeeperError):
    """The file exists but may not be downloaded in its current state."""

    def __init__(self, file_id: uuid.UUID, status: Any) -> None:
        super().__init__(
            f"File {file_id} is not available for download. Current status: {_label(status)}"
        )
        self.file_id = file_id
        self.status = status


class StorageProviderError(FileKeeperError):
    """A call to the object-storage collaborator failed."""

    def __init__(self, operation: str, storage_key: str | None, message: str) -> None:
        target = f" [{storage_key}]" if storage_key else ""
        super().__init__(f"storage {operation}{target} failed: {message}")
        self.operation = operation
        self.storage_key = storage_key


class PersistenceError(FileKeeperError):
    """A call to the persistence collaborator failed."""


class ConcurrentModificationError(PersistenceError):
    """The record changed underneath us (optimistic concurrency check failed)."""

    def __init__(self, file_id: uuid.UUID, expected_version: int) -> None:
        super().__init__(
            f"File record {file_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.file_id = file_id
        self.expected_version = expected_version


def _label(value: Any) -> str:
    return getattr(value, "value", str(value))
