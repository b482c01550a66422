"""FastAPI dependencies for route handlers.

- get_db: request-scoped database session
- get_storage: configured blob storage client
- get_image_transformer_dep: in-process image transformer
- require_internal_header: guards internal endpoints in staging/prod
- require_conversation_access: ImageAccessGate for conversation reads
"""

import hmac
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from unfurl.auth import AccessDecision, authorize_image_access
from unfurl.config import get_settings
from unfurl.db.session import get_db
from unfurl.errors import ForbiddenError, InternalOnlyError, UnauthenticatedError
from unfurl.logging import get_logger
from unfurl.services.image_transform import INTERNAL_HEADER, ImageTransformer
from unfurl.storage import StorageClientBase, get_storage_client

__all__ = [
    "get_db",
    "get_image_transformer_dep",
    "get_session_token",
    "get_storage",
    "require_conversation_access",
    "require_internal_header",
]

logger = get_logger(__name__)


def get_storage() -> StorageClientBase:
    return get_storage_client()


def get_image_transformer_dep() -> ImageTransformer:
    """The transform endpoint always works in-process."""
    return ImageTransformer()


def require_internal_header(request: Request) -> None:
    """Reject callers without the internal secret when the environment requires it.

    Uses constant-time comparison.
    """
    settings = get_settings()
    if not settings.requires_internal_header:
        return

    header_value = request.headers.get(INTERNAL_HEADER)
    secret = settings.unfurl_internal_secret
    if (
        header_value is None
        or not secret
        or not hmac.compare_digest(header_value.encode(), secret.encode())
    ):
        logger.warning(
            "internal_header_rejected",
            reason="missing" if header_value is None else "mismatch",
        )
        raise InternalOnlyError()


def get_session_token(request: Request) -> str:
    """Session token from `?token=` or `Authorization: Bearer`.

    Raises:
        UnauthenticatedError: If neither is present.
    """
    token = request.query_params.get("token")
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    raise UnauthenticatedError()


def require_conversation_access(
    conversation_id: UUID,
    token: Annotated[str, Depends(get_session_token)],
    db: Annotated[Session, Depends(get_db)],
) -> AccessDecision:
    """Allow only participants of the conversation.

    All denials look the same to clients; the reason is only logged.
    """
    decision = authorize_image_access(db, token, conversation_id)
    if not decision.allowed:
        logger.info(
            "image_access_denied",
            conversation_id=str(conversation_id),
            reason=decision.reason.value,
        )
        raise ForbiddenError()
    return decision
