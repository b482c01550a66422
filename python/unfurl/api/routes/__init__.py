"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
"""

from fastapi import APIRouter

from unfurl.api.routes.health import router as health_router
from unfurl.api.routes.link_previews import router as link_previews_router
from unfurl.api.routes.oembed import router as oembed_router


def create_api_router() -> APIRouter:
    """Create the API router with all routes registered."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(link_previews_router, tags=["link-previews"])
    api_router.include_router(oembed_router, tags=["oembed"])
    return api_router


__all__ = ["create_api_router"]
