"""Pydantic schemas for the storage upload-notification webhook.

Object storage (MinIO bucket notifications, S3 event bridges, SeaweedFS
filer hooks) reports what it actually stored; the payload is normalised to
:class:`StorageNotification` before reconciliation.

Usage::

    from filekeeper.schemas.notification import StorageNotification

    notification = StorageNotification(
        storage_key="docs/report.pdf",
        size=4096,
        etag="9b2cf535f27731c974343645a3985328",
        content_type="application/pdf",
        last_modified="2026-03-01T12:00:00Z",
    )
    metadata = notification.to_metadata()
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from filekeeper.core.metadata import ObjectMetadata


class StorageNotification(BaseModel):
    """Observed metadata of a freshly written object.

    ``content_type`` may be omitted by backends whose notifications do not
    carry it; the reconciler then fetches full metadata from storage.
    """

    storage_key: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    etag: str = Field(default="")
    content_type: str | None = None
    last_modified: datetime
    version_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("storage_key")
    @classmethod
    def strip_leading_slash(cls, v: str) -> str:
        v = v.lstrip("/")
        if not v:
            raise ValueError("storage_key must not be empty")
        return v

    def to_metadata(self) -> ObjectMetadata:
        return ObjectMetadata(
            key=self.storage_key,
            size=self.size,
            etag=self.etag,
            content_type=self.content_type or None,
            last_modified=self.last_modified,
            version_id=self.version_id,
            metadata=dict(self.metadata),
        )


class ReconcileResponse(BaseModel):
    outcome: Literal["accepted", "rejected", "already_processed", "not_found"]
    file_id: uuid.UUID | None = None
    status: str | None = None
    violations: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    storage: bool
    scanner: bool | None = None
