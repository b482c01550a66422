"""Client read API for cached previews and embeds.

Reads are scoped to one conversation: a hash is only served when an embed
of some message in that conversation references it. The cache itself is
global, so this is what keeps one conversation's links private to it.

Stored image refs are resolved to fetchable URLs at read time. A
re-hosted copy is served through the gated image route; without one the
original remote image URL is returned instead.
"""

from collections.abc import Iterable, Iterator
from uuid import UUID

from sqlalchemy import String, cast, or_, select
from sqlalchemy.orm import Session

from unfurl.config import get_settings
from unfurl.db.models import LinkPreview, Message
from unfurl.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from unfurl.logging import get_logger
from unfurl.schemas.link_preview import LinkPreviewOut, OembedOut
from unfurl.services import preview_cache
from unfurl.storage import IMAGE_VARIANTS, StorageClientBase

logger = get_logger(__name__)

MAX_HASHES_PER_REQUEST = 50


def build_image_url(conversation_id: UUID, url_hash: str, variant: str) -> str:
    """URL of the gated image route for one variant."""
    base = get_settings().public_api_base_url.rstrip("/")
    path = f"/conversations/{conversation_id}/link-previews/{url_hash}/image"
    return f"{base}{path}?variant={variant}"


def _dedupe(url_hashes: Iterable[str]) -> list[str]:
    ordered = list(dict.fromkeys(url_hashes))
    if len(ordered) > MAX_HASHES_PER_REQUEST:
        raise InvalidRequestError(
            message=f"At most {MAX_HASHES_PER_REQUEST} url_hash values per request"
        )
    return ordered


def referenced_hashes(db: Session, conversation_id: UUID, url_hashes: list[str]) -> set[str]:
    """The subset of url_hashes referenced by an embed in the conversation.

    The text match only narrows the scan; membership is decided on the
    parsed embed entries.
    """
    if not url_hashes:
        return set()

    embeds_text = cast(Message.embeds, String)
    rows = db.scalars(
        select(Message.embeds).where(
            Message.conversation_id == conversation_id,
            or_(*(embeds_text.contains(h, autoescape=True) for h in url_hashes)),
        )
    )

    wanted = set(url_hashes)
    found: set[str] = set()
    for embeds in rows:
        for entry in embeds or []:
            url_hash = entry.get("url_hash") if isinstance(entry, dict) else None
            if url_hash in wanted:
                found.add(url_hash)
    return found


def _scoped(db: Session, conversation_id: UUID, url_hashes: Iterable[str]) -> list[str]:
    ordered = _dedupe(url_hashes)
    visible = referenced_hashes(db, conversation_id, ordered)
    return [h for h in ordered if h in visible]


def _to_out(row: LinkPreview, conversation_id: UUID) -> LinkPreviewOut:
    if row.image_full_ref:
        full_url = build_image_url(conversation_id, row.url_hash, "full")
    else:
        full_url = row.original_image_url

    if row.image_thumb_ref:
        thumb_url = build_image_url(conversation_id, row.url_hash, "thumb")
    else:
        thumb_url = row.original_image_url

    return LinkPreviewOut(
        url_hash=row.url_hash,
        url=row.url,
        status=row.status,
        title=row.title,
        description=row.description,
        site_name=row.site_name,
        favicon_url=row.favicon_url,
        image_full_url=full_url,
        image_thumb_url=thumb_url,
        image_width=row.image_width,
        image_height=row.image_height,
    )


def get_previews_for_urls(
    db: Session, conversation_id: UUID, url_hashes: Iterable[str]
) -> list[LinkPreviewOut]:
    """Previews for the given hashes, in request order.

    Hashes that are unknown, or not linked from the conversation, are omitted.
    """
    ordered = _scoped(db, conversation_id, url_hashes)
    rows = {row.url_hash: row for row in preview_cache.get_many(db, ordered)}
    return [_to_out(rows[h], conversation_id) for h in ordered if h in rows]


def get_embeds(
    db: Session, conversation_id: UUID, url_hashes: Iterable[str]
) -> list[OembedOut]:
    """Unexpired cached embeds linked from the conversation, in request order."""
    ordered = _scoped(db, conversation_id, url_hashes)
    now = preview_cache.utcnow()
    rows = {
        row.url_hash: row
        for row in preview_cache.get_many_oembed(db, ordered)
        if not preview_cache.is_expired(row, now)
    }
    return [OembedOut.model_validate(rows[h]) for h in ordered if h in rows]


def open_preview_image(
    db: Session,
    storage: StorageClientBase,
    conversation_id: UUID,
    url_hash: str,
    variant: str,
) -> tuple[Iterator[bytes], str]:
    """Stream one re-hosted image variant linked from the conversation.

    Returns:
        (chunk iterator, content type)

    Raises:
        InvalidRequestError: Unknown variant.
        NotFoundError: No re-hosted copy exists, or no message in the
            conversation links to the hash.
    """
    if variant not in IMAGE_VARIANTS:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_VARIANT, f"Unknown variant: {variant}")

    if not referenced_hashes(db, conversation_id, [url_hash]):
        logger.info("preview_image_not_in_conversation", url_hash=url_hash)
        raise NotFoundError(ApiErrorCode.E_IMAGE_NOT_FOUND, "Image not found")

    row = preview_cache.get_one(db, url_hash)
    ref = None
    if row is not None:
        ref = row.image_full_ref if variant == "full" else row.image_thumb_ref

    metadata = storage.head_object(ref) if ref else None
    if metadata is None:
        raise NotFoundError(ApiErrorCode.E_IMAGE_NOT_FOUND, "Image not found")

    return storage.stream_object(ref), metadata.content_type
