"""Celery scan worker — malware-scans objects that passed validation.

:func:`scan_file_task` takes the storage key of an ``Uploaded`` record,
downloads the object, streams it to clamd through
:class:`~filekeeper.core.scan_client.ScanClient` and moves the record to
``Available`` (clean) or ``Rejected`` (infected / too large).

**Retry policy**

A scan that could not produce a verdict (clamd unreachable after the scan
client's own retries, storage unavailable, database blip) is retried by
Celery with a doubling countdown:

* Attempt 1  — immediate
* Retry  1   — 2 s
* Retry  2   — 4 s
* Retry  3   — 8 s (max)

The two retry layers multiply.  A ``ScanFailedError`` reaching the task
means the scan client already made ``clamav_max_retries + 1`` attempts, so
with both bounds at 3 one object sees at most 4 x 4 = 16 connections to
clamd before the task gives up.  Lower ``CLAMAV_MAX_RETRIES`` to shorten
that when the daemon is known to be down for long stretches.

The record stays ``Uploaded`` meanwhile; a failed scan is never treated as
clean.  Records that are unknown or no longer awaiting a scan are reported
as ``skipped`` without retrying.

**Event loop per task**

Each invocation runs its coroutine with :func:`asyncio.run`.  The database
engine and Redis client are created inside that loop and disposed before it
closes, so no connection outlives the loop it was opened on.

**Usage**::

    from filekeeper.workers.scan_worker import scan_file_task

    scan_file_task.delay(storage_key="docs/report.pdf")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from filekeeper.celery_app import celery_app
from filekeeper.config import get_settings
from filekeeper.core.errors import (
    InvalidStateTransition,
    PersistenceError,
    RecordNotFoundError,
    ScanFailedError,
    StorageProviderError,
)
from filekeeper.dependencies import (
    build_file_service,
    build_publisher,
    build_scan_client,
    get_storage,
)

logger = logging.getLogger(__name__)

#: Maximum number of automatic retries for transient failures.
_MAX_RETRIES: int = 3

#: Base retry countdown in seconds; doubles on each successive attempt
#: (2 s, 4 s, 8 s).
_RETRY_BASE_SECONDS: int = 2

#: Failures that may clear up on their own.
_TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ScanFailedError,
    StorageProviderError,
    PersistenceError,
    ConnectionError,
    TimeoutError,
    OSError,
)

#: Failures that no retry can fix.
_PERMANENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    RecordNotFoundError,
    InvalidStateTransition,
)


async def _run_scan(storage_key: str) -> dict[str, Any]:
    """Scan one object inside a private engine / Redis client."""
    settings = get_settings()
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    redis = None
    if settings.redis_url is not None and settings.clamav_enable_caching:
        redis = aioredis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)
    try:
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with factory() as session:
            service = build_file_service(
                session,
                settings,
                get_storage(),
                build_publisher(settings),
                build_scan_client(settings, redis),
            )
            record = await service.scan_file(storage_key)
    finally:
        if redis is not None:
            await redis.aclose()
        await engine.dispose()

    return {
        "file_id": str(record.id),
        "storage_key": record.storage_key,
        "status": record.status.value,
        "rejection_reason": record.rejection_reason,
    }


@celery_app.task(
    name="filekeeper.workers.scan_worker.scan_file_task",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def scan_file_task(self: Any, *, storage_key: str) -> dict[str, Any]:
    """Celery task: scan the object at *storage_key* and record the verdict.

    Returns:
        A dict with ``file_id``, ``storage_key``, ``status`` and
        ``rejection_reason``; or ``{"storage_key", "status": "skipped",
        "error"}`` when the record cannot be scanned.

    Raises:
        :exc:`celery.exceptions.Retry`: On transient failure (up to
            :data:`_MAX_RETRIES` retries).
    """
    try:
        result = asyncio.run(_run_scan(storage_key))

    except _PERMANENT_EXCEPTIONS as exc:
        logger.warning("scan_file_task: skipping storage_key=%s (no retry): %s", storage_key, exc)
        return {"storage_key": storage_key, "status": "skipped", "error": str(exc)}

    except _TRANSIENT_EXCEPTIONS as exc:
        countdown = _RETRY_BASE_SECONDS * (2 ** self.request.retries)
        logger.warning(
            "scan_file_task: transient error, retry %d/%d in %ds: storage_key=%s error=%r",
            self.request.retries + 1,
            _MAX_RETRIES,
            countdown,
            storage_key,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)

    except Exception as exc:
        countdown = _RETRY_BASE_SECONDS * (2 ** self.request.retries)
        logger.error(
            "scan_file_task: unexpected error, retry %d/%d in %ds: storage_key=%s error=%r",
            self.request.retries + 1,
            _MAX_RETRIES,
            countdown,
            storage_key,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)

    logger.info(
        "scan_file_task: complete storage_key=%s status=%s",
        storage_key,
        result["status"],
    )
    return result
