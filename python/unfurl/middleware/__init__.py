"""HTTP middleware."""

from unfurl.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware

__all__ = ["REQUEST_ID_HEADER", "RequestIDMiddleware"]
