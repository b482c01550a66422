"""Link preview and embed Pydantic schemas.

Request and response models for the preview read API, the image
transform endpoint and the on-demand embed endpoint.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class MessageEmbedOut(BaseModel):
    """One entry of a message's `embeds` array."""

    type: Literal["link", "instagram", "facebook", "threads"]
    url: str
    url_hash: str
    status: Literal["pending", "ready", "error"]
    error_message: str | None = None


class LinkPreviewOut(BaseModel):
    """Client view of a cached link preview.

    Image URLs are resolved at read time: the gated re-hosted copy when one
    exists, otherwise the original remote image.
    """

    url_hash: str
    url: str
    status: Literal["pending", "success", "error", "no_preview"]
    title: str | None = None
    description: str | None = None
    site_name: str | None = None
    favicon_url: str | None = None
    image_full_url: str | None = None
    image_thumb_url: str | None = None
    image_width: int | None = None
    image_height: int | None = None


class OembedOut(BaseModel):
    """Cached provider embed for rendering."""

    url_hash: str
    url: str
    provider: Literal["instagram", "facebook", "threads"]
    html: str
    author_name: str | None = None
    thumbnail_url: str | None = None
    width: int | None = None

    model_config = ConfigDict(from_attributes=True)


class ProcessImageRequest(BaseModel):
    """Image transform endpoint input."""

    url: str = Field(..., min_length=1, max_length=2048)


class ProcessImageOut(BaseModel):
    """Image transform endpoint output. Variants are base64 WEBP."""

    full: str
    thumb: str
    width: int
    height: int


class EmbedRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)


class EmbedData(BaseModel):
    html: str
    author_name: str | None = None
    thumbnail_url: str | None = None
    provider: Literal["instagram", "facebook", "threads"]


class EmbedRequestResult(BaseModel):
    """Outcome of an on-demand embed request.

    success=True carries data; success=False carries a user-facing error.
    """

    success: bool
    data: EmbedData | None = None
    error: str | None = None
