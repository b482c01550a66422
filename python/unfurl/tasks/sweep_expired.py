"""Expired cache sweeper task.

Scheduled by Celery beat every SWEEP_INTERVAL_S. Each run deletes at
most max_batch expired rows per table; a backlog drains over successive
runs.
"""

from unfurl.celery import celery_app
from unfurl.config import get_settings
from unfurl.db.session import session_scope
from unfurl.logging import clear_task_context, configure_task_logging, get_logger
from unfurl.services import preview_cache
from unfurl.storage import get_storage_client

logger = get_logger(__name__)


def run_sweep(max_batch: int | None = None) -> dict[str, int]:
    """Sweep both cache tables once.

    Returns:
        Number of rows deleted per table.
    """
    max_batch = max_batch or get_settings().sweep_batch_size
    now = preview_cache.utcnow()

    with session_scope() as db:
        oembed_deleted = preview_cache.sweep_expired_oembed(db, now, max_batch)
        previews_deleted = preview_cache.sweep_expired_previews(
            db, now, max_batch, get_storage_client()
        )

    if oembed_deleted or previews_deleted:
        logger.info(
            "cache_sweep_complete",
            oembed_deleted=oembed_deleted,
            previews_deleted=previews_deleted,
            max_batch=max_batch,
        )
    return {"oembed": oembed_deleted, "link_previews": previews_deleted}


@celery_app.task(bind=True, max_retries=0, name="sweep_expired_cache")
def sweep_expired_cache(self, max_batch: int | None = None) -> dict[str, int]:
    configure_task_logging(task_name="sweep_expired_cache", task_id=self.request.id)
    try:
        return run_sweep(max_batch)
    finally:
        clear_task_context()
