"""
Celery worker entry point.

Run the worker and beat from here:
    celery -A main worker --loglevel=info
    celery -A main beat --loglevel=info
"""
import os
import sys

# Make the API package importable (container mounts it at /api).
sys.path.insert(0, os.getenv("API_PATH", "/api"))

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

app = celery_app


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
