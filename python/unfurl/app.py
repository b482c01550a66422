"""FastAPI application creation and configuration.

The request-id middleware is added separately by the entrypoint, after
everything else, so that it runs outermost and every response (errors
included) carries X-Request-ID.
"""

from fastapi import FastAPI

from unfurl.api.routes import create_api_router
from unfurl.config import Environment, get_settings
from unfurl.logging import configure_logging, get_logger
from unfurl.middleware.request_id import RequestIDMiddleware
from unfurl.responses import register_exception_handlers

configure_logging()

logger = get_logger(__name__)


def create_app() -> FastAPI:
    """Build the API: preview reads, gated images, image transform and embeds."""
    settings = get_settings()

    app = FastAPI(
        title="Unfurl API",
        description="Link previews, provider embeds and preview image hosting",
        version="0.1.0",
        docs_url=None if settings.unfurl_env == Environment.PROD else "/docs",
        redoc_url=None,
    )

    register_exception_handlers(app)
    app.include_router(create_api_router())

    logger.info(
        "app_created",
        env=settings.unfurl_env.value,
        internal_header_required=settings.requires_internal_header,
    )
    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware. Call after all other middleware is added."""
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
