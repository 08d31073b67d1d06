"""
Celery worker entry point for stack pushes.

Runs both the worker and the beat scheduler that fires the daily
`tasks.push_scheduled_stacks` job:

    celery -A main worker -B --loglevel=info
"""
import os
import sys

# The API package is mounted at /api in the container; override for local runs.
sys.path.insert(0, os.environ.get("CLIPIN_API_PATH", "/api"))

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()
celery_app.autodiscover_tasks(['tasks'])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok", "app": celery_app.main}
