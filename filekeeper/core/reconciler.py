"""Reconciler — validates an uploaded object against its file record.

Object storage notifies us (webhook / event) once bytes have landed.  The
:class:`Reconciler` compares what storage *observed* with what the
:class:`~filekeeper.core.file_record.FileRecord` *expects* and moves the
record forward or rejects it.

**Fail-closed policy:** an object that cannot be proven valid must not stay
both unvalidated and retrievable.  Every rule violation, and every
unexpected error while checking (including a failed metadata fetch), leads
to ``reject()`` and, once that state is committed, a best-effort delete of
the object.  A notification that loses the commit race deletes nothing.
From the caller's point of view a rejection is a normal outcome, reported through
:class:`ReconcileResult`, not an exception.

**Idempotence:** only ``Pending`` records are reconciled; duplicate
notifications for a record that already moved on are ``already_processed``.
When two notifications race, the persistence layer's optimistic version
check lets exactly one of them commit; the loser is also reported as
``already_processed``.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from filekeeper.core.errors import ConcurrentModificationError, ValidationFailed
from filekeeper.core.file_record import FileRecord, FileStatus
from filekeeper.core.interfaces import FileRecordRepository, ObjectStorage
from filekeeper.core.metadata import ObjectMetadata

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("filekeeper.reconcile")

_RECONCILE_TOTAL = Counter(
    "filekeeper_reconcile_total",
    "Upload notifications reconciled, by outcome",
    ["outcome"],
)
_CLEANUP_ERRORS = Counter(
    "filekeeper_reconcile_cleanup_errors_total",
    "Failed best-effort deletes of rejected objects",
)


class ReconcileOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a single :meth:`Reconciler.reconcile` call.

    Attributes:
        outcome: What happened.
        record: The record after reconciliation; ``None`` for ``not_found``.
            After a lost race this is the state the winner committed.
        violations: Rule violations that caused a rejection, in check order.
    """

    outcome: ReconcileOutcome
    record: FileRecord | None = None
    violations: tuple[str, ...] = ()


class Reconciler:
    """Compares storage-observed metadata with the expected record.

    Args:
        repository: Persistence collaborator.
        storage: Storage collaborator (metadata fetch and cleanup deletes).
        validation_enabled: When ``False`` every notification is accepted.
        scanning_enabled: Accepted records go to ``Uploaded`` (await a scan)
            instead of straight to ``Available``.
        max_file_size_bytes: Upper size limit; ``0`` disables the check.
    """

    def __init__(
        self,
        repository: FileRecordRepository,
        storage: ObjectStorage,
        *,
        validation_enabled: bool = True,
        scanning_enabled: bool = False,
        max_file_size_bytes: int = 0,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._validation_enabled = validation_enabled
        self._scanning_enabled = scanning_enabled
        self._max_file_size = max_file_size_bytes

    async def reconcile(self, storage_key: str, actual: ObjectMetadata) -> ReconcileResult:
        """Validate the object at *storage_key* and persist the new state.

        Raises:
            PersistenceError: If the lookup or the final commit fails for a
                reason other than a lost concurrent update.
        """
        with tracer.start_as_current_span("filekeeper.reconcile") as span:
            span.set_attribute("file.storage_key", storage_key)
            result = await self._reconcile(storage_key, actual)
            span.set_attribute("reconcile.outcome", result.outcome.value)
            if result.outcome is ReconcileOutcome.REJECTED:
                span.set_status(Status(StatusCode.ERROR, "; ".join(result.violations)))
            _RECONCILE_TOTAL.labels(outcome=result.outcome.value).inc()
            return result

    async def _reconcile(self, storage_key: str, actual: ObjectMetadata) -> ReconcileResult:
        record = await self._repository.get_by_storage_key(storage_key)
        if record is None:
            logger.warning("Upload notification for unknown storage_key=%s", storage_key)
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)

        if record.status is not FileStatus.PENDING:
            logger.info(
                "File %s already processed (status=%s); ignoring notification",
                storage_key,
                record.status.value,
            )
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, record)

        violations: tuple[str, ...] = ()
        if not self._validation_enabled:
            self._accept(record)
        else:
            try:
                actual = await self._ensure_content_type(storage_key, actual)
                self._check(record, actual)
            except ValidationFailed as exc:
                violations = exc.violations
            except Exception as exc:
                logger.exception("Validation of %s raised unexpectedly", storage_key)
                violations = (f"validation error: {exc}",)

            if violations:
                record.reject("; ".join(violations))
            else:
                self._accept(record)

        try:
            await self._repository.update(record)
            await self._repository.commit()
        except ConcurrentModificationError:
            await self._repository.rollback()
            logger.info("Lost race reconciling %s; another worker committed first", storage_key)
            current = await self._repository.get_by_storage_key(storage_key)
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, current or record)
        except Exception:
            await self._repository.rollback()
            raise

        if violations:
            await self._remove_object(storage_key)

        outcome = ReconcileOutcome.REJECTED if violations else ReconcileOutcome.ACCEPTED
        logger.info(
            json.dumps({
                "event": "file_reconciled",
                "file_id": str(record.id),
                "storage_key": storage_key,
                "outcome": outcome.value,
                "status": record.status.value,
                "violations": list(violations),
            })
        )
        return ReconcileResult(outcome, record, violations)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _ensure_content_type(
        self, storage_key: str, actual: ObjectMetadata
    ) -> ObjectMetadata:
        """Fill in metadata the notification left out.

        Some backends (S3 events, SeaweedFS webhooks) omit the content type;
        in that case the complete metadata is fetched from storage.
        """
        if actual.has_content_type:
            return actual
        logger.debug("Notification for %s lacks content type; fetching metadata", storage_key)
        return await self._storage.get_metadata(storage_key)

    def _check(self, record: FileRecord, actual: ObjectMetadata) -> None:
        """Raise :class:`ValidationFailed` listing every violated rule."""
        violations: list[str] = []

        if actual.size != record.size:
            violations.append(
                f"size mismatch: expected {record.size} bytes, got {actual.size} bytes"
            )
        if self._max_file_size > 0 and actual.size > self._max_file_size:
            violations.append(
                f"size exceeds limit: {actual.size} bytes > {self._max_file_size} bytes"
            )
        actual_type = actual.content_type or ""
        if actual_type.casefold() != record.content_type.casefold():
            violations.append(
                f"content type mismatch: expected '{record.content_type}', "
                f"got '{actual.content_type}'"
            )

        if violations:
            raise ValidationFailed(violations)

    def _accept(self, record: FileRecord) -> None:
        if self._scanning_enabled:
            record.mark_uploaded()
        else:
            record.mark_validated()

    async def _remove_object(self, storage_key: str) -> None:
        try:
            await self._storage.remove(storage_key)
        except Exception as exc:
            _CLEANUP_ERRORS.inc()
            logger.warning(
                "Failed to delete rejected object %s from storage: %r", storage_key, exc
            )
