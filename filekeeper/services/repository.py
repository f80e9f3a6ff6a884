"""SqlAlchemyFileRecordRepository — FileRecord persistence on an AsyncSession.

Maps :class:`~filekeeper.models.file_record.FileRecordModel` rows to
:class:`~filekeeper.core.file_record.FileRecord` aggregates and back.

**Optimistic concurrency:** :meth:`update` issues
``UPDATE file_record ... WHERE id = :id AND version = :expected`` and bumps
the version.  Zero affected rows means another transaction committed first
and raises :class:`~filekeeper.core.errors.ConcurrentModificationError`.

**Outbox:** every lifecycle event queued on an added or updated record is
inserted into ``file_event`` within the same transaction, so the state
change and the fact that it happened are committed atomically.
:meth:`mark_events_delivered` stamps ``delivered_at`` once a publisher has
accepted them.

Tombstoned (deleted) records are still returned by id and storage key but
are ignored by hash lookups and the pending queue.

Usage::

    async with get_sessionmaker()() as session:
        repo = SqlAlchemyFileRecordRepository(session)
        record = await repo.get_by_storage_key("docs/report.pdf")
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from filekeeper.core.errors import ConcurrentModificationError, PersistenceError
from filekeeper.core.file_record import FileRecord, FileStatus, StorageProvider
from filekeeper.core.interfaces import FileRecordRepository
from filekeeper.models.file_event import FileEventModel
from filekeeper.models.file_record import FileRecordModel

logger = logging.getLogger(__name__)

_PENDING_STATUSES = (FileStatus.PENDING.value, FileStatus.UPLOADED.value)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: FileRecordModel) -> FileRecord:
    return FileRecord(
        id=row.id,
        file_name=row.file_name,
        path=row.path,
        storage_key=row.storage_key,
        size=row.size,
        content_type=row.content_type,
        provider=row.provider,
        status=row.status,
        uploaded_at=_aware(row.uploaded_at),
        hash=row.hash,
        validated_at=_aware(row.validated_at),
        scanned_at=_aware(row.scanned_at),
        rejection_reason=row.rejection_reason,
        deleted_at=_aware(row.deleted_at),
        version=row.version,
    )


def _mutable_columns(record: FileRecord) -> dict:
    return {
        "status": record.status.value,
        "validated_at": record.validated_at,
        "scanned_at": record.scanned_at,
        "rejection_reason": record.rejection_reason,
        "deleted_at": record.deleted_at,
    }


class SqlAlchemyFileRecordRepository(FileRecordRepository):
    """:class:`FileRecordRepository` backed by a SQLAlchemy ``AsyncSession``.

    One repository wraps one session (one unit of work).

    Args:
        session: The async session to read from and write to.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        # Outbox rows flushed in the open transaction, and rows already committed.
        self._written_events: set[uuid.UUID] = set()
        self._committed_events: set[uuid.UUID] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_by_id(self, file_id: uuid.UUID) -> FileRecord | None:
        return await self._first(select(FileRecordModel).where(FileRecordModel.id == file_id))

    async def get_by_storage_key(self, storage_key: str) -> FileRecord | None:
        return await self._first(
            select(FileRecordModel).where(FileRecordModel.storage_key == storage_key)
        )

    async def get_by_hash(self, content_hash: str) -> FileRecord | None:
        return await self._first(
            select(FileRecordModel)
            .where(FileRecordModel.hash == content_hash, FileRecordModel.deleted_at.is_(None))
            .order_by(FileRecordModel.uploaded_at)
            .limit(1)
        )

    async def exists_by_hash(self, content_hash: str) -> bool:
        return await self._exists(
            FileRecordModel.hash == content_hash, FileRecordModel.deleted_at.is_(None)
        )

    async def exists_by_storage_key(self, storage_key: str) -> bool:
        return await self._exists(FileRecordModel.storage_key == storage_key)

    async def get_by_status(self, status: FileStatus) -> list[FileRecord]:
        return await self._all(
            select(FileRecordModel)
            .where(FileRecordModel.status == FileStatus(status).value)
            .order_by(FileRecordModel.uploaded_at.desc())
        )

    async def get_by_provider(self, provider: StorageProvider) -> list[FileRecord]:
        return await self._all(
            select(FileRecordModel)
            .where(FileRecordModel.provider == StorageProvider(provider).value)
            .order_by(FileRecordModel.uploaded_at.desc())
        )

    async def get_by_upload_date_range(
        self, start: datetime, end: datetime
    ) -> list[FileRecord]:
        if start > end:
            raise ValueError("start must not be after end")
        return await self._all(
            select(FileRecordModel)
            .where(FileRecordModel.uploaded_at.between(start, end))
            .order_by(FileRecordModel.uploaded_at.desc())
        )

    async def get_pending(self) -> list[FileRecord]:
        return await self._all(
            select(FileRecordModel)
            .where(
                FileRecordModel.status.in_(_PENDING_STATUSES),
                FileRecordModel.deleted_at.is_(None),
            )
            .order_by(FileRecordModel.uploaded_at)
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, record: FileRecord) -> None:
        row = FileRecordModel(
            id=record.id,
            file_name=record.file_name,
            path=record.path,
            storage_key=record.storage_key,
            size=record.size,
            content_type=record.content_type,
            hash=record.hash,
            provider=record.provider.value,
            uploaded_at=record.uploaded_at,
            version=record.version,
            **_mutable_columns(record),
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise PersistenceError(
                f"add failed for storage_key={record.storage_key}: {exc.orig}"
            ) from exc
        self._write_events(record)
        await self._flush("add", record)

    async def update(self, record: FileRecord) -> None:
        expected = record.version
        stmt = (
            update(FileRecordModel)
            .where(FileRecordModel.id == record.id, FileRecordModel.version == expected)
            .values(version=expected + 1, **_mutable_columns(record))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"update failed for file {record.id}: {exc}") from exc
        if result.rowcount != 1:
            logger.info(
                "Stale update rejected file_id=%s expected_version=%d", record.id, expected
            )
            raise ConcurrentModificationError(record.id, expected)
        record.version = expected + 1
        self._write_events(record)
        await self._flush("update", record)

    async def mark_events_delivered(self, event_ids: Iterable[uuid.UUID]) -> None:
        ids = list(event_ids)
        if not ids:
            return
        stmt = (
            update(FileEventModel)
            .where(FileEventModel.event_id.in_(ids))
            .values(delivered_at=datetime.now(tz=timezone.utc))
            .execution_options(synchronize_session=False)
        )
        try:
            await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"marking events delivered failed: {exc}") from exc

    async def undelivered_events(self) -> list[FileEventModel]:
        """Outbox rows not yet accepted by a publisher, oldest first."""
        result = await self._session.execute(
            select(FileEventModel)
            .where(FileEventModel.delivered_at.is_(None))
            .order_by(FileEventModel.occurred_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def begin(self) -> None:
        if not self._session.in_transaction():
            await self._session.begin()

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"commit failed: {exc}") from exc
        self._committed_events |= self._written_events
        self._written_events.clear()

    async def rollback(self) -> None:
        self._written_events.clear()
        await self._session.rollback()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_events(self, record: FileRecord) -> None:
        for event in record.pending_events:
            if event.event_id in self._written_events or event.event_id in self._committed_events:
                continue
            self._session.add(
                FileEventModel(
                    event_id=event.event_id,
                    file_id=record.id,
                    event_type=event.event_type,
                    payload=event.to_dict(),
                    occurred_at=event.occurred_at,
                )
            )
            self._written_events.add(event.event_id)

    async def _flush(self, operation: str, record: FileRecord) -> None:
        try:
            await self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{operation} failed for file {record.id}: {exc}") from exc

    async def _first(self, stmt) -> FileRecord | None:
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        row = result.scalars().first()
        return _to_record(row) if row is not None else None

    async def _all(self, stmt) -> list[FileRecord]:
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [_to_record(row) for row in result.scalars().all()]

    async def _exists(self, *criteria) -> bool:
        result = await self._session.execute(select(exists().where(*criteria)))
        return bool(result.scalar())
