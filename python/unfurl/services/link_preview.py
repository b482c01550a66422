"""Link preview pipeline.

One invocation handles one URL referenced by one message:

    canonicalize -> consult cache -> (on miss) fetch + transform
        -> upsert cache -> project status onto the message embed

Generic pages go through the link_previews table:

    pending -> success | no_preview | error

Provider URLs (instagram, facebook, threads) are resolved through their
oEmbed endpoints into oembed_cache instead. Either way the message embed
only tracks pending / ready / error.

Policy is process-once: a terminal, unexpired row is served from cache
(including error rows) and never refetched. delete_preview() is the
explicit way to force reprocessing.

Fetch and transform failures are classified and turned into terminal
rows plus an error embed status; they never propagate out of process().
"""

from dataclasses import dataclass
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from unfurl.db.models import EmbedStatus, LinkPreview, LinkPreviewStatus, OembedProvider
from unfurl.logging import clear_link_context, get_logger, set_link_context
from unfurl.services import preview_cache
from unfurl.services.embed_projector import ProjectionOutcome, project_embed_status
from unfurl.services.image_transform import (
    OUTPUT_CONTENT_TYPE,
    ImageTransformer,
    RemoteImageTransformer,
    TransformedImage,
    get_image_transformer,
)
from unfurl.services.link_preview_errors import InvalidUrlError, PipelineError, is_retryable
from unfurl.services.oembed import resolve_oembed
from unfurl.services.page_metadata import PageMetadata, extract_metadata, fetch_page
from unfurl.services.safe_fetch import BLOCKED_MESSAGE
from unfurl.services.url_key import detect_provider, is_url_safe_to_fetch, url_key
from unfurl.storage import StorageClientBase, StorageError, build_preview_image_path

logger = get_logger(__name__)

BLOCKED_URL_MESSAGE = BLOCKED_MESSAGE
INTERNAL_ERROR_MESSAGE = "Internal error while processing link"


@dataclass(frozen=True)
class PipelineResult:
    """What one invocation did.

    Attributes:
        url_hash: Cache key of the processed URL.
        embed_status: Status projected onto the message embed.
        preview_status: Terminal link_previews status (None on the provider path).
        cache_hit: True if an existing terminal row was reused.
        projection: Projector outcome (None when no message was given).
    """

    url_hash: str
    embed_status: EmbedStatus
    preview_status: LinkPreviewStatus | None
    cache_hit: bool
    projection: ProjectionOutcome | None


def embed_status_for(status: LinkPreviewStatus | str) -> EmbedStatus:
    """Map a cache row status onto the message embed status."""
    status = LinkPreviewStatus(status)
    if status is LinkPreviewStatus.pending:
        return EmbedStatus.pending
    if status is LinkPreviewStatus.error:
        return EmbedStatus.error
    # no_preview renders as a plain link, which is a settled outcome
    return EmbedStatus.ready


class PreviewPipeline:
    """Orchestrates cache lookup, fetch, transform, upsert and projection."""

    def __init__(
        self,
        db: Session,
        storage: StorageClientBase,
        transformer: ImageTransformer | RemoteImageTransformer | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.db = db
        self.storage = storage
        self.transformer = transformer or get_image_transformer()
        self.http_client = http_client

    def process(self, message_id: UUID | None, raw_url: str) -> PipelineResult | None:
        """Process one URL for one message.

        Returns:
            PipelineResult, or None if the URL cannot be canonicalized
            (such URLs never reach the cache).
        """
        try:
            canonical, url_hash = url_key(raw_url)
        except InvalidUrlError as e:
            logger.warning("link_preview_invalid_url", error=e.message)
            return None

        set_link_context(url_hash, str(message_id) if message_id else None)
        try:
            provider = detect_provider(canonical)
            if provider is not None:
                return self._process_provider(message_id, canonical, url_hash, provider)
            return self._process_link(message_id, canonical, url_hash)
        finally:
            clear_link_context()

    # =========================================================================
    # Generic pages
    # =========================================================================

    def _process_link(
        self, message_id: UUID | None, canonical: str, url_hash: str
    ) -> PipelineResult:
        cached = preview_cache.get_one(self.db, url_hash)
        if (
            cached is not None
            and LinkPreviewStatus(cached.status).is_terminal
            and not preview_cache.is_expired(cached)
        ):
            logger.info("link_preview_cache_hit", status=cached.status)
            return self._finish(message_id, cached, cache_hit=True)

        if not is_url_safe_to_fetch(canonical):
            logger.warning("link_preview_unsafe_url")
            row = preview_cache.upsert_preview(
                self.db,
                url_hash,
                preview_cache.PreviewFields(
                    url=canonical,
                    status=LinkPreviewStatus.error,
                    error_message=BLOCKED_URL_MESSAGE,
                ),
            )
            return self._finish(message_id, row, cache_hit=False)

        previous_refs = (cached.image_full_ref, cached.image_thumb_ref) if cached else ()

        preview_cache.ensure_pending(self.db, url_hash, canonical)

        fields = self._build_fields(canonical, url_hash)
        row = preview_cache.upsert_preview(self.db, url_hash, fields)
        self._drop_stale_images(previous_refs, row)
        return self._finish(message_id, row, cache_hit=False)

    def _build_fields(self, canonical: str, url_hash: str) -> preview_cache.PreviewFields:
        """Fetch and transform; every failure becomes a terminal record."""
        try:
            page = fetch_page(canonical, client=self.http_client)
        except PipelineError as e:
            # retryable failures are worth a delete_preview once the site recovers
            logger.warning(
                "link_preview_fetch_failed",
                kind=e.kind.value,
                error=e.message,
                retryable=is_retryable(e.kind),
            )
            return preview_cache.PreviewFields(
                url=canonical, status=LinkPreviewStatus.error, error_message=e.message
            )
        except Exception:
            logger.exception("link_preview_fetch_crashed")
            return preview_cache.PreviewFields(
                url=canonical,
                status=LinkPreviewStatus.error,
                error_message=INTERNAL_ERROR_MESSAGE,
            )

        canonical_url = page.final_url if page.final_url != canonical else None

        metadata = extract_metadata(page.html, page.final_url) if page.is_html else None
        if metadata is None:
            logger.info("link_preview_no_metadata")
            return preview_cache.PreviewFields(
                url=canonical,
                status=LinkPreviewStatus.no_preview,
                canonical_url=canonical_url,
            )

        fields = preview_cache.PreviewFields(
            url=canonical,
            status=LinkPreviewStatus.success,
            canonical_url=canonical_url,
            title=metadata.title,
            description=metadata.description,
            site_name=metadata.site_name,
            og_type=metadata.og_type,
            favicon_url=metadata.favicon_url,
            original_image_url=metadata.image_url,
        )
        self._attach_image(fields, metadata, url_hash)
        return fields

    def _attach_image(
        self, fields: preview_cache.PreviewFields, metadata: PageMetadata, url_hash: str
    ) -> None:
        """Re-host the page image. Failures leave original_image_url as the fallback."""
        if not metadata.image_url:
            return
        if not is_url_safe_to_fetch(metadata.image_url):
            logger.info("link_preview_image_skipped", reason="unsafe_url")
            return

        try:
            image = self.transformer.process(metadata.image_url)
        except PipelineError as e:
            logger.warning("link_preview_image_failed", kind=e.kind.value, error=e.message)
            return
        except Exception:
            logger.exception("link_preview_image_crashed")
            return

        refs = self._store_image(url_hash, image)
        if refs is None:
            return

        fields.image_full_ref, fields.image_thumb_ref = refs
        fields.image_width = image.width
        fields.image_height = image.height

    def _store_image(self, url_hash: str, image: TransformedImage) -> tuple[str, str] | None:
        full_path = build_preview_image_path(url_hash, "full")
        thumb_path = build_preview_image_path(url_hash, "thumb")
        try:
            self.storage.put_object(full_path, image.full, OUTPUT_CONTENT_TYPE)
            self.storage.put_object(thumb_path, image.thumb, OUTPUT_CONTENT_TYPE)
        except StorageError as e:
            logger.warning("link_preview_image_store_failed", error=e.message)
            # No half-stored pairs
            self.storage.delete_object(full_path)
            self.storage.delete_object(thumb_path)
            return None
        return full_path, thumb_path

    def _drop_stale_images(self, previous_refs: tuple, current: LinkPreview) -> None:
        """Remove images a refreshed row no longer references."""
        current_refs = {current.image_full_ref, current.image_thumb_ref}
        for ref in previous_refs:
            if ref and ref not in current_refs:
                self.storage.delete_object(ref)

    def _finish(
        self, message_id: UUID | None, row: LinkPreview, *, cache_hit: bool
    ) -> PipelineResult:
        status = LinkPreviewStatus(row.status)
        embed_status = embed_status_for(status)
        projection = None
        if message_id is not None:
            projection = project_embed_status(
                self.db,
                message_id,
                row.url_hash,
                embed_status,
                row.error_message if embed_status is EmbedStatus.error else None,
            )

        logger.info("link_preview_processed", status=status.value, cache_hit=cache_hit)
        return PipelineResult(
            url_hash=row.url_hash,
            embed_status=embed_status,
            preview_status=status,
            cache_hit=cache_hit,
            projection=projection,
        )

    # =========================================================================
    # Provider embeds
    # =========================================================================

    def _process_provider(
        self,
        message_id: UUID | None,
        canonical: str,
        url_hash: str,
        provider: OembedProvider,
    ) -> PipelineResult:
        cached = preview_cache.get_oembed(self.db, url_hash)
        cache_hit = cached is not None and not preview_cache.is_expired(cached)

        error_message = None
        try:
            resolve_oembed(self.db, canonical, url_hash, provider, client=self.http_client)
            embed_status = EmbedStatus.ready
        except PipelineError as e:
            logger.warning("oembed_fetch_failed", kind=e.kind.value, error=e.message)
            embed_status = EmbedStatus.error
            error_message = e.message

        projection = None
        if message_id is not None:
            projection = project_embed_status(
                self.db, message_id, url_hash, embed_status, error_message
            )

        logger.info(
            "oembed_processed",
            provider=provider.value,
            status=embed_status.value,
            cache_hit=cache_hit,
        )
        return PipelineResult(
            url_hash=url_hash,
            embed_status=embed_status,
            preview_status=None,
            cache_hit=cache_hit,
            projection=projection,
        )
