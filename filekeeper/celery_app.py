"""Celery application for FileKeeper background work.

Malware scans run here rather than in the request path: the webhook route
queues :func:`~filekeeper.workers.scan_worker.scan_file_task` for every
record that reaches ``Uploaded``.

The broker and result backend are both Redis (``settings.redis_url``).
Tasks are routed to a ``filekeeper`` queue by default.

Starting a worker::

    celery -A filekeeper.celery_app worker --loglevel=info -Q filekeeper
"""

from celery import Celery

from filekeeper.config import get_settings

_settings = get_settings()
_broker_url = str(_settings.redis_url) if _settings.redis_url else "redis://localhost:6379/0"

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "filekeeper",
    broker=_broker_url,
    backend=_broker_url,
    include=["filekeeper.workers.scan_worker"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="filekeeper",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=86400,
)
