"""X-Request-ID middleware.

Every request gets a correlation ID: a well-formed incoming X-Request-ID
is reused (UUIDs lowercased), anything else is replaced by a fresh UUID4.
The ID is bound to the logging context for the duration of the request,
stored on request.state, echoed on the response and forwarded by the
remote image transform client.

Must be registered last so it wraps every other middleware, including
error responses produced outside route handlers.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from unfurl.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

logger = get_logger(__name__)


def resolve_request_id(incoming: str | None) -> str:
    """Accept a client-supplied ID if well-formed, otherwise mint one."""
    if incoming and len(incoming.encode("utf-8")) <= MAX_REQUEST_ID_LENGTH:
        if _UUID_PATTERN.match(incoming):
            return incoming.lower()
        if _TOKEN_PATTERN.match(incoming):
            return incoming
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds a request ID to logs and responses, and writes one access line."""

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.monotonic()
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        set_request_context(request_id, path=request.url.path, method=request.method)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            if self.log_requests:
                logger.info(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                )
            return response
        except Exception:
            logger.exception("request_failed")
            raise
        finally:
            clear_request_context()
