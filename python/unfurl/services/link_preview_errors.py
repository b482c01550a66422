"""Failure taxonomy for the link preview pipeline.

Fetch and transform failures are raised as PipelineError inside the
pipeline and caught at its boundary, where they become terminal cache
rows and projected embed statuses. Nothing in this module is raised
past that boundary.

The HTTP status class of each kind is shared by the image transform
endpoint (which renders errors) and the remote transform client (which
maps responses back to kinds).
"""

from enum import Enum

from unfurl.errors import ApiErrorCode


class PipelineErrorKind(str, Enum):
    """Classified pipeline failures."""

    E_INVALID_URL = "E_INVALID_URL"
    E_TIMEOUT = "E_TIMEOUT"
    E_NOT_AN_IMAGE = "E_NOT_AN_IMAGE"
    E_TOO_LARGE = "E_TOO_LARGE"
    E_CORRUPT = "E_CORRUPT"
    E_UPSTREAM_FETCH_FAILED = "E_UPSTREAM_FETCH_FAILED"
    E_INTERNAL = "E_INTERNAL"


PIPELINE_ERROR_TO_STATUS: dict[PipelineErrorKind, int] = {
    PipelineErrorKind.E_INVALID_URL: 400,
    PipelineErrorKind.E_TIMEOUT: 504,
    PipelineErrorKind.E_NOT_AN_IMAGE: 400,
    PipelineErrorKind.E_TOO_LARGE: 413,
    PipelineErrorKind.E_CORRUPT: 400,
    PipelineErrorKind.E_UPSTREAM_FETCH_FAILED: 502,
    PipelineErrorKind.E_INTERNAL: 500,
}

# Public API codes for each kind (image transform endpoint responses)
PIPELINE_ERROR_TO_API_CODE: dict[PipelineErrorKind, ApiErrorCode] = {
    PipelineErrorKind.E_INVALID_URL: ApiErrorCode.E_INVALID_URL,
    PipelineErrorKind.E_TIMEOUT: ApiErrorCode.E_UPSTREAM_TIMEOUT,
    PipelineErrorKind.E_NOT_AN_IMAGE: ApiErrorCode.E_NOT_AN_IMAGE,
    PipelineErrorKind.E_TOO_LARGE: ApiErrorCode.E_IMAGE_TOO_LARGE,
    PipelineErrorKind.E_CORRUPT: ApiErrorCode.E_IMAGE_CORRUPT,
    PipelineErrorKind.E_UPSTREAM_FETCH_FAILED: ApiErrorCode.E_UPSTREAM_FETCH_FAILED,
    PipelineErrorKind.E_INTERNAL: ApiErrorCode.E_INTERNAL,
}

_API_CODE_TO_PIPELINE_ERROR = {v.value: k for k, v in PIPELINE_ERROR_TO_API_CODE.items()}

_RETRYABLE = frozenset({PipelineErrorKind.E_TIMEOUT, PipelineErrorKind.E_UPSTREAM_FETCH_FAILED})


class PipelineError(Exception):
    """Classified fetch/transform failure.

    Attributes:
        kind: The failure class.
        message: Short diagnostic, stored as the row's error_message.
    """

    def __init__(self, kind: PipelineErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return PIPELINE_ERROR_TO_STATUS[self.kind]

    @property
    def api_code(self) -> ApiErrorCode:
        return PIPELINE_ERROR_TO_API_CODE[self.kind]


class InvalidUrlError(PipelineError):
    """A URL that cannot be canonicalized. Never reaches the cache."""

    def __init__(self, message: str = "Invalid URL"):
        super().__init__(PipelineErrorKind.E_INVALID_URL, message)


def is_retryable(kind: PipelineErrorKind) -> bool:
    """Whether a failure is a transient network issue rather than bad input."""
    return kind in _RETRYABLE


def kind_from_response(status_code: int, code: str | None) -> PipelineErrorKind:
    """Map a transform endpoint error response back to a failure kind.

    The error code wins when recognized; otherwise the status class decides.
    """
    if code and code in _API_CODE_TO_PIPELINE_ERROR:
        return _API_CODE_TO_PIPELINE_ERROR[code]

    if status_code == 413:
        return PipelineErrorKind.E_TOO_LARGE
    if status_code == 504:
        return PipelineErrorKind.E_TIMEOUT
    if status_code == 502:
        return PipelineErrorKind.E_UPSTREAM_FETCH_FAILED
    if status_code == 400:
        return PipelineErrorKind.E_INVALID_URL
    return PipelineErrorKind.E_INTERNAL
