"""Database module for unfurl.

Engine creation, session scopes and the ORM models of the preview caches
and the chat tables they serve.
"""

from unfurl.db.engine import create_db_engine, get_engine
from unfurl.db.models import (
    AuthSession,
    Base,
    Conversation,
    ConversationParticipant,
    EmbedStatus,
    EmbedType,
    LinkPreview,
    LinkPreviewStatus,
    Message,
    OembedCache,
    OembedProvider,
    Player,
    User,
)
from unfurl.db.session import get_db, session_scope

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "session_scope",
    # Base
    "Base",
    # Enums
    "LinkPreviewStatus",
    "EmbedStatus",
    "EmbedType",
    "OembedProvider",
    # Cache models
    "LinkPreview",
    "OembedCache",
    # Collaborator models
    "User",
    "Player",
    "AuthSession",
    "Conversation",
    "ConversationParticipant",
    "Message",
]
