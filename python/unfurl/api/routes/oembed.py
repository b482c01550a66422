"""On-demand provider embed route."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from unfurl.api.deps import get_db
from unfurl.schemas.link_preview import EmbedRequest
from unfurl.services import oembed as oembed_service

router = APIRouter()


@router.post("/oembed/request")
def request_embed(
    request: EmbedRequest,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Fetch (or reuse) the embed for one Instagram, Facebook or Threads URL.

    Always 200: failures are reported as `success: false` with a message.
    """
    result = oembed_service.request_embed(db, request.url)
    return {"data": result.model_dump(mode="json")}
