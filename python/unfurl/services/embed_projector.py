"""Projection of cache results onto message embeds.

The cache row is the source of truth for whether a link is ready; each
message carries a per-URL view of that status in its `embeds` array.
project_embed_status() patches exactly the entry matching a url_hash and
leaves every sibling entry identical and in place.

Writes are optimistic: the UPDATE is conditioned on the embeds_version
that was read, and retried when a concurrent writer got there first.
Messages that vanished and entries that no longer exist are reported as
outcomes, never raised.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from unfurl.db.models import EmbedStatus, Message
from unfurl.logging import get_logger

logger = get_logger(__name__)

MAX_ATTEMPTS = 5


class ProjectionOutcome(str, Enum):
    applied = "applied"
    message_gone = "message_gone"
    embed_missing = "embed_missing"


class EmbedProjectionConflict(Exception):
    """The message kept changing underneath every attempt."""


def _patched_entry(
    entry: dict[str, Any], status: EmbedStatus, error_message: str | None
) -> dict[str, Any]:
    patched = dict(entry)
    patched["status"] = status.value
    # Only error entries carry a diagnostic
    if status != EmbedStatus.error:
        patched.pop("error_message", None)
    elif error_message is not None:
        patched["error_message"] = error_message
    return patched


def project_embed_status(
    db: Session,
    message_id: UUID,
    url_hash: str,
    status: EmbedStatus | str,
    error_message: str | None = None,
) -> ProjectionOutcome:
    """Apply a status to the embed entry of one message.

    Args:
        db: Database session.
        message_id: Message owning the embed.
        url_hash: Cache key identifying the entry.
        status: New embed status (pending, ready, error).
        error_message: Diagnostic for error statuses.

    Returns:
        applied, message_gone or embed_missing.

    Raises:
        EmbedProjectionConflict: If every optimistic attempt lost a race.
    """
    status = EmbedStatus(status)

    for attempt in range(1, MAX_ATTEMPTS + 1):
        row = db.execute(
            select(Message.embeds, Message.embeds_version).where(Message.id == message_id)
        ).first()

        if row is None:
            logger.info("embed_projection_message_gone", message_id=str(message_id))
            return ProjectionOutcome.message_gone

        embeds = list(row.embeds or [])
        if not any(entry.get("url_hash") == url_hash for entry in embeds):
            logger.info(
                "embed_projection_embed_missing",
                message_id=str(message_id),
                url_hash=url_hash,
            )
            return ProjectionOutcome.embed_missing

        patched = [
            _patched_entry(entry, status, error_message)
            if entry.get("url_hash") == url_hash
            else entry
            for entry in embeds
        ]
        if patched == embeds:
            return ProjectionOutcome.applied

        result = db.execute(
            update(Message)
            .where(Message.id == message_id, Message.embeds_version == row.embeds_version)
            .values(
                embeds=patched,
                embeds_version=row.embeds_version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount == 1:
            logger.info(
                "embed_projection_applied",
                message_id=str(message_id),
                url_hash=url_hash,
                status=status.value,
            )
            return ProjectionOutcome.applied

        logger.info(
            "embed_projection_retry",
            message_id=str(message_id),
            url_hash=url_hash,
            attempt=attempt,
        )

    raise EmbedProjectionConflict(
        f"Embeds of message {message_id} changed on every attempt ({MAX_ATTEMPTS})"
    )
