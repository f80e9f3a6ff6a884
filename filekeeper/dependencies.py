"""Builders that wire the lifecycle core to concrete collaborators.

Shared by the FastAPI app (via ``Depends``) and the Celery scan worker.
Process-wide collaborators (MinIO client, scan client, publisher) are built
once and cached; the repository and :class:`FileService` are built per unit
of work around a fresh ``AsyncSession``.

Tests override :func:`get_file_service` / :func:`get_storage` /
:func:`get_scan_client` through ``app.dependency_overrides``.
"""

from __future__ import annotations

import functools
from datetime import timedelta
from typing import Any, AsyncIterator

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from filekeeper.config import Settings, get_settings
from filekeeper.core.interfaces import EventPublisher, ObjectStorage
from filekeeper.core.scan_cache import InMemoryScanCache, RedisScanCache, ScanCache
from filekeeper.core.scan_client import ScanClient
from filekeeper.db.session import get_db
from filekeeper.services.file_service import FileService
from filekeeper.services.publisher import LoggingEventPublisher, WebhookEventPublisher
from filekeeper.services.repository import SqlAlchemyFileRecordRepository
from filekeeper.services.storage import MinioObjectStorage, build_minio_client


def build_scan_cache(settings: Settings, redis: Any | None = None) -> ScanCache | None:
    if not settings.clamav_enable_caching:
        return None
    if redis is not None:
        return RedisScanCache(redis)
    return InMemoryScanCache()


def build_scan_client(settings: Settings, redis: Any | None = None) -> ScanClient:
    return ScanClient(
        settings.clamav_host,
        settings.clamav_port,
        max_file_size_bytes=settings.clamav_max_file_size_bytes,
        scan_timeout=settings.clamav_scan_timeout_seconds,
        connect_timeout=settings.clamav_connection_timeout_seconds,
        max_retries=settings.clamav_max_retries,
        cache=build_scan_cache(settings, redis),
        cache_ttl_seconds=settings.clamav_cache_expiration_minutes * 60,
    )


def build_publisher(settings: Settings) -> EventPublisher:
    if settings.event_webhook_url:
        return WebhookEventPublisher(settings.event_webhook_url, settings.event_webhook_token)
    return LoggingEventPublisher()


def build_file_service(
    session: AsyncSession,
    settings: Settings,
    storage: ObjectStorage,
    publisher: EventPublisher | None,
    scan_client: ScanClient | None,
) -> FileService:
    return FileService(
        SqlAlchemyFileRecordRepository(session),
        storage,
        publisher,
        scan_client=scan_client,
        validation_enabled=settings.validation_enabled,
        scanning_enabled=settings.scanning_enabled,
        max_file_size_bytes=settings.max_file_size_bytes,
        presigned_url_expiration=timedelta(seconds=settings.presigned_url_expiration_seconds),
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def get_storage() -> ObjectStorage:
    settings = get_settings()
    return MinioObjectStorage(build_minio_client(settings), settings.minio_bucket)


@functools.lru_cache(maxsize=1)
def get_redis() -> aioredis.Redis | None:
    settings = get_settings()
    if settings.redis_url is None:
        return None
    return aioredis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)


@functools.lru_cache(maxsize=1)
def get_scan_client() -> ScanClient | None:
    settings = get_settings()
    if not settings.scanning_enabled:
        return None
    return build_scan_client(settings, get_redis())


@functools.lru_cache(maxsize=1)
def get_publisher() -> EventPublisher:
    return build_publisher(get_settings())


async def get_file_service(
    session: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    publisher: EventPublisher = Depends(get_publisher),
    scan_client: ScanClient | None = Depends(get_scan_client),
) -> AsyncIterator[FileService]:
    yield build_file_service(session, get_settings(), storage, publisher, scan_client)
