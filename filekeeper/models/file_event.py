"""FileEventModel ORM model: transactional outbox of lifecycle events.

Every event queued on a :class:`~filekeeper.core.file_record.FileRecord` is
written here in the same transaction as the state change that raised it.
``delivered_at`` stays ``NULL`` until a publisher has accepted the event, so
undelivered events survive a crash between commit and publish.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from filekeeper.db.base import Base


class FileEventModel(Base):
    __tablename__ = "file_event"
    __table_args__ = (
        Index("ix_file_event_file_id", "file_id"),
        Index("ix_file_event_delivered_at", "delivered_at"),
    )

    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("file_record.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
