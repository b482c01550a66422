"""Celery tasks for unfurl.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery.

Usage in API (enqueue):
    from unfurl.tasks import process_link_preview
    process_link_preview.apply_async(
        args=[message_id, url],
        kwargs={"request_id": request_id},
        queue="previews",
    )
"""

from unfurl.tasks.process_link_preview import process_link_preview
from unfurl.tasks.sweep_expired import sweep_expired_cache

__all__ = ["process_link_preview", "sweep_expired_cache"]
