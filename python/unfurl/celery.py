"""Celery application configuration.

Shared by the API (enqueueing) and the worker (executing).

Usage:
    from unfurl.tasks import process_link_preview
    process_link_preview.apply_async(args=[message_id, url], queue="previews")

Queues:
- previews: one pipeline invocation per message URL
- default: maintenance (expiry sweep, scheduled by beat)
"""

from celery import Celery

from unfurl.config import get_settings

settings = get_settings()

celery_app = Celery("unfurl")

celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

celery_app.conf.task_routes = {
    "process_link_preview": {"queue": "previews"},
    "sweep_expired_cache": {"queue": "default"},
}
celery_app.conf.task_default_queue = "default"

celery_app.conf.beat_schedule = {
    "sweep-expired-cache": {
        "task": "sweep_expired_cache",
        "schedule": float(settings.sweep_interval_s),
    },
}

celery_app.conf.task_always_eager = False
