"""ORM model registry - import all models so Alembic autogenerate can detect them."""

from filekeeper.models.file_event import FileEventModel
from filekeeper.models.file_record import FileRecordModel

__all__ = [
    "FileRecordModel",
    "FileEventModel",
]
