"""API routes for object-storage upload notifications.

Endpoints
---------
POST /v1/webhooks/storage
    Accepts a :class:`~filekeeper.schemas.notification.StorageNotification`
    describing an object storage has just written and reconciles it against
    the expected file record.  Rejections are reported in the body with
    ``200 OK``; only an unknown storage key yields ``404``.

When scanning is enabled, an accepted record is ``Uploaded`` and a Celery
scan task is queued for it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from filekeeper.core.file_record import FileStatus
from filekeeper.core.reconciler import ReconcileOutcome
from filekeeper.dependencies import get_file_service
from filekeeper.schemas.notification import ReconcileResponse, StorageNotification
from filekeeper.services.file_service import FileService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


def _enqueue_scan(storage_key: str) -> None:
    # Imported lazily so the API process does not need a broker at import time.
    from filekeeper.workers.scan_worker import scan_file_task

    scan_file_task.delay(storage_key=storage_key)


@router.post("/storage", response_model=ReconcileResponse)
async def storage_notification(
    notification: StorageNotification,
    service: FileService = Depends(get_file_service),
) -> ReconcileResponse:
    result = await service.reconcile(notification.storage_key, notification.to_metadata())

    if result.outcome is ReconcileOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=404,
            detail=f"No file registered for storage key '{notification.storage_key}'",
        )

    record = result.record
    if result.outcome is ReconcileOutcome.ACCEPTED and record.status is FileStatus.UPLOADED:
        try:
            _enqueue_scan(record.storage_key)
        except Exception as exc:
            # The record stays Uploaded and shows up in the pending queue.
            logger.error("Could not enqueue scan for %s: %r", record.storage_key, exc)

    return ReconcileResponse(
        outcome=result.outcome.value,
        file_id=record.id,
        status=record.status.value,
        violations=list(result.violations),
    )
