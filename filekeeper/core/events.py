"""Lifecycle events raised by :class:`~filekeeper.core.file_record.FileRecord`.

Events are immutable facts.  The aggregate queues them in
``pending_events``; the orchestrator hands them to an
:class:`~filekeeper.core.interfaces.EventPublisher` only after the
corresponding state change has been committed.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True, kw_only=True)
class LifecycleEvent:
    """Fields common to every lifecycle event.

    Attributes:
        file_id: Id of the aggregate that raised the event.
        storage_key: Storage key of the aggregate.
        event_id: Opaque unique id of this event occurrence.
        occurred_at: UTC timestamp of the occurrence.
    """

    file_id: uuid.UUID
    storage_key: str
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)
    occurred_at: datetime = field(default_factory=_utcnow)

    #: Stable wire name used by publishers and the outbox table.
    EVENT_TYPE = "file.event"

    @property
    def event_type(self) -> str:
        return self.EVENT_TYPE

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        payload = asdict(self)
        payload["file_id"] = str(self.file_id)
        payload["event_id"] = str(self.event_id)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event_type"] = self.event_type
        return payload


@dataclass(frozen=True, kw_only=True)
class FileUploaded(LifecycleEvent):
    file_name: str

    EVENT_TYPE = "file.uploaded"


@dataclass(frozen=True, kw_only=True)
class FileValidated(LifecycleEvent):
    EVENT_TYPE = "file.validated"


@dataclass(frozen=True, kw_only=True)
class FileScanned(LifecycleEvent):
    EVENT_TYPE = "file.scanned"


@dataclass(frozen=True, kw_only=True)
class FileRejected(LifecycleEvent):
    reason: str

    EVENT_TYPE = "file.rejected"


@dataclass(frozen=True, kw_only=True)
class FileDeleted(LifecycleEvent):
    EVENT_TYPE = "file.deleted"


EVENT_TYPES: dict[str, type[LifecycleEvent]] = {
    cls.EVENT_TYPE: cls
    for cls in (FileUploaded, FileValidated, FileScanned, FileRejected, FileDeleted)
}
