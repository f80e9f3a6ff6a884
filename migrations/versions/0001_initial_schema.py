"""Initial schema: file_record, file_event

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- file_record ---
    op.create_table(
        "file_record",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False, server_default=""),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("content_type", sa.Text(), nullable=False),
        sa.Column("hash", sa.String(128), nullable=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scanned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("storage_key", name="uq_file_record_storage_key"),
        sa.CheckConstraint(
            "status IN ('Pending', 'Uploaded', 'Available', 'Rejected')",
            name="ck_file_record_status",
        ),
        sa.CheckConstraint(
            "(status = 'Rejected') = (rejection_reason IS NOT NULL)",
            name="ck_file_record_rejection_reason",
        ),
    )
    op.create_index("ix_file_record_hash", "file_record", ["hash"])
    op.create_index("ix_file_record_status", "file_record", ["status"])
    op.create_index("ix_file_record_uploaded_at", "file_record", ["uploaded_at"])

    # --- file_event (transactional outbox) ---
    op.create_table(
        "file_event",
        sa.Column("event_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "file_id",
            sa.Uuid(),
            sa.ForeignKey("file_record.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_file_event_file_id", "file_event", ["file_id"])
    op.create_index("ix_file_event_delivered_at", "file_event", ["delivered_at"])


def downgrade() -> None:
    op.drop_index("ix_file_event_delivered_at", table_name="file_event")
    op.drop_index("ix_file_event_file_id", table_name="file_event")
    op.drop_table("file_event")

    op.drop_index("ix_file_record_uploaded_at", table_name="file_record")
    op.drop_index("ix_file_record_status", table_name="file_record")
    op.drop_index("ix_file_record_hash", table_name="file_record")
    op.drop_table("file_record")
