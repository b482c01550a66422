"""Celery task running one link preview pipeline invocation.

max_retries=0: failures are recorded as terminal cache rows, and a
reprocess requires explicit invalidation.
"""

from uuid import UUID

from unfurl.celery import celery_app
from unfurl.db.session import session_scope
from unfurl.logging import clear_task_context, configure_task_logging, get_logger
from unfurl.services.link_preview import PreviewPipeline
from unfurl.storage import get_storage_client

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="process_link_preview")
def process_link_preview(
    self,
    message_id: str,
    url: str,
    request_id: str | None = None,
) -> dict:
    """Process one URL found in one message.

    Returns:
        Dict describing the outcome (status, url_hash, cache_hit).
    """
    configure_task_logging(
        request_id=request_id, task_name="process_link_preview", task_id=self.request.id
    )
    logger.info("process_link_preview_started")

    try:
        with session_scope() as db:
            result = PreviewPipeline(db, get_storage_client()).process(UUID(message_id), url)
    except Exception:
        logger.exception("process_link_preview_failed")
        raise
    finally:
        clear_task_context()

    if result is None:
        return {"status": "skipped", "reason": "invalid_url"}

    outcome = {
        "status": result.embed_status.value,
        "url_hash": result.url_hash,
        "cache_hit": result.cache_hit,
    }
    logger.info("process_link_preview_completed", **outcome)
    return outcome
