"""Object metadata as reported by (or expected from) object storage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ObjectMetadata:
    """Observed or expected metadata of a stored object.

    ``content_type`` is optional because some backends (S3 event
    notifications, SeaweedFS custom webhooks) do not report it; the
    reconciler fetches it from storage when it is missing.

    Attributes:
        key: Storage key of the object.
        size: Object size in bytes.
        etag: Entity tag reported by the backend.
        content_type: MIME type, or ``None`` when the backend omitted it.
        last_modified: Last modification timestamp.
        version_id: Object version for versioned buckets.
        metadata: Custom user metadata attached to the object.
    """

    key: str
    size: int
    etag: str
    content_type: str | None
    last_modified: datetime
    version_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def has_content_type(self) -> bool:
        return self.content_type is not None

