"""Response envelopes and exception handlers.

Every response body is one of:
- Success: {"data": ...}
- Error: {"error": {"code": "E_...", "message": "...", "request_id": "..."}}

register_exception_handlers() makes every failure path render the error
envelope, including framework errors raised before a route runs.
"""

import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from unfurl.errors import ApiError, ApiErrorCode
from unfurl.logging import get_logger, get_request_id
from unfurl.storage import StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ApiErrorCode.E_INVALID_REQUEST,
    401: ApiErrorCode.E_UNAUTHENTICATED,
    403: ApiErrorCode.E_FORBIDDEN,
    404: ApiErrorCode.E_NOT_FOUND,
    405: ApiErrorCode.E_INVALID_REQUEST,
    422: ApiErrorCode.E_INVALID_REQUEST,
}

_BODY_METHODS = ("POST", "PUT", "PATCH")


def success_response(data: Any) -> dict[str, Any]:
    return {"data": data}


def error_response(
    code: ApiErrorCode, message: str, request_id: str | None = None
) -> dict[str, Any]:
    """Error envelope. request_id defaults to the one bound to the current request."""
    error = {"code": code.value, "message": message}
    request_id = request_id or get_request_id()
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


def _error_json(status_code: int, code: ApiErrorCode, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_response(code, message))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return _error_json(exc.status_code, exc.code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unmatched routes, wrong methods and other framework-raised HTTP errors."""
    code = _STATUS_TO_CODE.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    return _error_json(exc.status_code, code, str(exc.detail) or "An error occurred")


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Bad bodies, path or query parameters are 400, not FastAPI's 422."""
    logger.info("request_validation_failed", errors=len(exc.errors()))
    return _error_json(400, ApiErrorCode.E_INVALID_REQUEST, "Invalid request")


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error", error=exc.message, code=exc.code)
    return _error_json(500, ApiErrorCode.E_STORAGE_ERROR, "Storage unavailable")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 with no detail for the client; the traceback goes to the logs."""
    logger.exception("unhandled_exception", error=str(exc))
    return _error_json(500, ApiErrorCode.E_INTERNAL, "Internal server error")


async def reject_malformed_json(request: Request, call_next):
    """Middleware: refuse unparseable JSON bodies before routing."""
    if request.method in _BODY_METHODS and "application/json" in request.headers.get(
        "content-type", ""
    ):
        body = await request.body()
        if body:
            try:
                json.loads(body)
            except json.JSONDecodeError:
                return _error_json(400, ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body")
    return await call_next(request)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.middleware("http")(reject_malformed_json)
