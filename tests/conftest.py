"""Shared pytest configuration and fixtures for FileKeeper tests.

Sets required environment variables before any filekeeper module is imported,
so that ``filekeeper.config.get_settings()`` succeeds in the test environment.
"""
from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone

import fakeredis.aioredis
import pytest
import pytest_asyncio

# Set required env vars before any filekeeper module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("CLAMAV_HOST", "127.0.0.1")
os.environ.setdefault("MINIO_ENDPOINT", "localhost:9000")

from filekeeper.core.file_record import FileRecord, FileStatus, StorageProvider  # noqa: E402
from filekeeper.core.metadata import ObjectMetadata  # noqa: E402


def make_record(
    *,
    status: FileStatus = FileStatus.PENDING,
    size: int = 1024,
    content_type: str = "application/pdf",
    path: str = "docs",
    file_name: str = "report.pdf",
    content_hash: str | None = None,
    version: int = 0,
) -> FileRecord:
    """Rehydrate a record in *status* without queuing any events."""
    return FileRecord(
        id=uuid.uuid4(),
        file_name=file_name,
        path=path,
        storage_key=f"{path}/{file_name}" if path else file_name,
        size=size,
        content_type=content_type,
        provider=StorageProvider.MINIO,
        status=status,
        uploaded_at=datetime.now(tz=timezone.utc),
        hash=content_hash,
        rejection_reason="earlier rejection" if status is FileStatus.REJECTED else None,
        version=version,
    )


def make_metadata(
    key: str = "docs/report.pdf",
    *,
    size: int = 1024,
    content_type: str | None = "application/pdf",
) -> ObjectMetadata:
    return ObjectMetadata(
        key=key,
        size=size,
        etag="d41d8cd98f00b204e9800998ecf8427e",
        content_type=content_type,
        last_modified=datetime.now(tz=timezone.utc),
    )


@pytest_asyncio.fixture
async def fake_redis():
    """In-process Redis for cache tests."""
    fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield fake
    await fake.aclose()


@pytest.fixture
def pending_record() -> FileRecord:
    return make_record()


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def metadata_factory():
    return make_metadata
