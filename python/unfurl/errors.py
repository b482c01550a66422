"""API error codes and exceptions.

Routes and dependencies raise ApiError (or a subclass); the handlers in
unfurl.responses render it as the error envelope with the status taken
from ERROR_CODE_TO_STATUS. Failures of the image pipeline have their own
taxonomy (unfurl.services.link_preview_errors) and are translated into
these codes at the HTTP boundary.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"
    E_NOT_FOUND = "E_NOT_FOUND"
    E_IMAGE_NOT_FOUND = "E_IMAGE_NOT_FOUND"
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_URL = "E_INVALID_URL"
    E_INVALID_VARIANT = "E_INVALID_VARIANT"
    E_NOT_AN_IMAGE = "E_NOT_AN_IMAGE"
    E_IMAGE_CORRUPT = "E_IMAGE_CORRUPT"
    E_IMAGE_TOO_LARGE = "E_IMAGE_TOO_LARGE"
    E_UPSTREAM_FETCH_FAILED = "E_UPSTREAM_FETCH_FAILED"
    E_UPSTREAM_TIMEOUT = "E_UPSTREAM_TIMEOUT"
    E_INTERNAL = "E_INTERNAL"
    E_STORAGE_ERROR = "E_STORAGE_ERROR"


ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_IMAGE_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_URL: 400,
    ApiErrorCode.E_INVALID_VARIANT: 400,
    ApiErrorCode.E_NOT_AN_IMAGE: 400,
    ApiErrorCode.E_IMAGE_CORRUPT: 400,
    ApiErrorCode.E_IMAGE_TOO_LARGE: 413,
    ApiErrorCode.E_UPSTREAM_FETCH_FAILED: 502,
    ApiErrorCode.E_UPSTREAM_TIMEOUT: 504,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_STORAGE_ERROR: 500,
}


class ApiError(Exception):
    """An error with a stable code, a client-safe message and an HTTP status."""

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class UnauthenticatedError(ApiError):
    def __init__(self, message: str = "Missing session token"):
        super().__init__(ApiErrorCode.E_UNAUTHENTICATED, message)


class InternalOnlyError(ApiError):
    def __init__(self, message: str = "Internal API access required"):
        super().__init__(ApiErrorCode.E_INTERNAL_ONLY, message)


class ForbiddenError(ApiError):
    """Every access gate denial. The reason is logged, never returned."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(ApiErrorCode.E_FORBIDDEN, message)


class NotFoundError(ApiError):
    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)
