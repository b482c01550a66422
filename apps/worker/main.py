"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q previews,default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

Tasks are registered by explicit import, no autodiscovery. Every task
accepts `request_id` where it is triggered by an API request and calls
configure_task_logging() first, so log entries carry request_id,
task_name and task_id.
"""

from celery.signals import worker_process_init

from unfurl.celery import celery_app
from unfurl.logging import configure_logging, get_logger

# Each import registers the task with celery_app
from unfurl.tasks import process_link_preview, sweep_expired_cache  # noqa: F401


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queues=["previews", "default"])


__all__ = ["celery_app"]
