"""Link preview routes.

Routes are transport-only:
- Resolve dependencies (db, storage, access gate)
- Call exactly one service function
- Return success(...) or raise ApiError
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from unfurl.api.deps import (
    get_db,
    get_image_transformer_dep,
    get_storage,
    require_conversation_access,
    require_internal_header,
)
from unfurl.auth import AccessDecision
from unfurl.errors import ApiError
from unfurl.logging import get_logger
from unfurl.responses import success_response
from unfurl.schemas.link_preview import ProcessImageOut, ProcessImageRequest
from unfurl.services import previews as previews_service
from unfurl.services.image_transform import ImageTransformer
from unfurl.services.link_preview_errors import PipelineError
from unfurl.storage import StorageClientBase

logger = get_logger(__name__)

router = APIRouter()

IMAGE_CACHE_CONTROL = "private, max-age=3600"


@router.post(
    "/link-preview/process-image",
    dependencies=[Depends(require_internal_header)],
)
def process_image(
    request: ProcessImageRequest,
    transformer: Annotated[ImageTransformer, Depends(get_image_transformer_dep)],
) -> dict:
    """Fetch a remote image and return full and thumb WEBP variants (base64).

    Errors carry the status class of the failure:
    400 bad input, 413 too large, 502 fetch failed, 504 timeout, 500 internal.
    """
    try:
        image = transformer.process(request.url)
    except PipelineError as e:
        logger.info("process_image_failed", kind=e.kind.value, error=e.message)
        raise ApiError(e.api_code, e.message) from e

    return success_response(ProcessImageOut(**image.to_payload()).model_dump())


@router.get("/conversations/{conversation_id}/link-previews")
def get_link_previews(
    conversation_id: UUID,
    access: Annotated[AccessDecision, Depends(require_conversation_access)],
    db: Annotated[Session, Depends(get_db)],
    url_hash: Annotated[list[str] | None, Query()] = None,
) -> dict:
    """Cached previews linked from the conversation, in request order."""
    result = previews_service.get_previews_for_urls(db, conversation_id, url_hash or [])
    return success_response([preview.model_dump(mode="json") for preview in result])


@router.get("/conversations/{conversation_id}/embeds")
def get_embeds(
    conversation_id: UUID,
    access: Annotated[AccessDecision, Depends(require_conversation_access)],
    db: Annotated[Session, Depends(get_db)],
    url_hash: Annotated[list[str] | None, Query()] = None,
) -> dict:
    """Cached provider embeds; rows past their expiry are omitted."""
    result = previews_service.get_embeds(db, conversation_id, url_hash or [])
    return success_response([embed.model_dump(mode="json") for embed in result])


@router.get("/conversations/{conversation_id}/link-previews/{url_hash}/image")
def get_link_preview_image(
    conversation_id: UUID,
    url_hash: str,
    access: Annotated[AccessDecision, Depends(require_conversation_access)],
    db: Annotated[Session, Depends(get_db)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
    variant: str = "full",
) -> StreamingResponse:
    """Serve a re-hosted preview image to a conversation participant."""
    chunks, content_type = previews_service.open_preview_image(
        db, storage, conversation_id, url_hash, variant
    )
    return StreamingResponse(
        chunks,
        media_type=content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )
