"""
Celery app for stack pushes.

Imported by the API (to enqueue single-user syncs) and by the worker, which
also runs beat for the daily multi-user push.
"""
from celery import Celery
from core.config import settings
from celerybeat_schedule import beat_schedule

celery_app = Celery(
    "clipin",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # The daily batch walks every connected user sequentially
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    # A push that dies mid-run is not re-delivered; the next beat tick covers it
    task_acks_late=False,
    worker_prefetch_multiplier=1,
    # core.logging owns the root logger (redaction filter)
    worker_hijack_root_logger=False,
    beat_schedule=beat_schedule,
)

from . import stack_tasks  # noqa: E402

__all__ = ["celery_app"]
