"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from unfurl.schemas.link_preview import (
    EmbedData,
    EmbedRequest,
    EmbedRequestResult,
    LinkPreviewOut,
    MessageEmbedOut,
    OembedOut,
    ProcessImageOut,
    ProcessImageRequest,
)

__all__ = [
    "EmbedData",
    "EmbedRequest",
    "EmbedRequestResult",
    "LinkPreviewOut",
    "MessageEmbedOut",
    "OembedOut",
    "ProcessImageOut",
    "ProcessImageRequest",
]
