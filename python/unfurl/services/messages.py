"""Message creation with link embeds.

A message gets one pending embed per distinct URL in its body at
creation time. One pipeline task per embed is enqueued after commit so
message delivery never waits on remote fetches.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from unfurl.config import Environment, get_settings
from unfurl.db.models import EmbedStatus, EmbedType, Message
from unfurl.logging import get_logger
from unfurl.schemas.link_preview import MessageEmbedOut
from unfurl.services.url_key import detect_provider, extract_urls, hash_url

logger = get_logger(__name__)


def build_message_embeds(body: str) -> list[dict[str, Any]]:
    """Pending embed entries for each distinct URL in a message body."""
    embeds = []
    for url in extract_urls(body):
        provider = detect_provider(url)
        entry = MessageEmbedOut(
            type=provider.value if provider else EmbedType.link.value,
            url=url,
            url_hash=hash_url(url),
            status=EmbedStatus.pending.value,
        )
        embeds.append(entry.model_dump(exclude_none=True))
    return embeds


def create_message(
    db: Session,
    conversation_id: UUID,
    author_player_id: UUID | None,
    body: str,
    request_id: str | None = None,
) -> Message:
    """Persist a message with its embeds and schedule preview processing."""
    message = Message(
        conversation_id=conversation_id,
        author_player_id=author_player_id,
        body=body,
        embeds=build_message_embeds(body),
        embeds_version=0,
    )
    db.add(message)
    db.commit()

    logger.info(
        "message_created",
        message_id=str(message.id),
        conversation_id=str(conversation_id),
        embed_count=len(message.embeds),
    )

    for embed in message.embeds:
        _enqueue_link_preview(message.id, embed["url"], request_id)

    return message


def _enqueue_link_preview(message_id: UUID, url: str, request_id: str | None) -> bool:
    """Enqueue the process_link_preview Celery task.

    Returns:
        True if the task was enqueued, False otherwise.
    """
    settings = get_settings()

    # In test environment, don't enqueue - let tests call the pipeline directly
    if settings.unfurl_env == Environment.TEST:
        logger.debug("skipping_task_enqueue", reason="test_environment")
        return False

    try:
        from unfurl.tasks import process_link_preview

        process_link_preview.apply_async(
            args=[str(message_id), url],
            kwargs={"request_id": request_id},
            queue="previews",
        )
        logger.info("link_preview_task_enqueued", message_id=str(message_id))
        return True
    except Exception as e:
        # Log but don't fail - the message is already delivered
        logger.warning(
            "link_preview_task_enqueue_failed",
            message_id=str(message_id),
            error=str(e),
        )
        return False
