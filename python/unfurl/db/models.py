"""SQLAlchemy ORM models for unfurl.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Status enums are Python enums stored as text with CHECK constraints.
Column types are portable (PostgreSQL in deployments, SQLite in tests).
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

EmbedsJSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class LinkPreviewStatus(str, PyEnum):
    """Link preview cache row states.

    States:
        pending: Row exists, processing not complete (or never scheduled)
        success: Metadata and/or re-hosted image available
        error: Fetch or processing failed; error_message carries a diagnostic
        no_preview: Page fetched but no usable metadata found
    """

    pending = "pending"
    success = "success"
    error = "error"
    no_preview = "no_preview"

    @property
    def is_terminal(self) -> bool:
        return self is not LinkPreviewStatus.pending


class EmbedStatus(str, PyEnum):
    """Per-message embed states, projected from the cache."""

    pending = "pending"
    ready = "ready"
    error = "error"


class OembedProvider(str, PyEnum):
    """Providers whose embeds come from an oEmbed endpoint."""

    instagram = "instagram"
    facebook = "facebook"
    threads = "threads"


class EmbedType(str, PyEnum):
    """Kinds of message embeds. Generic pages use `link`."""

    link = "link"
    instagram = "instagram"
    facebook = "facebook"
    threads = "threads"


# =============================================================================
# Cache tables
# =============================================================================


class LinkPreview(Base):
    """Cached preview for a generic web page, keyed by url_hash.

    One row per url_hash. Rows are created pending and patched in place;
    they are never re-inserted for the same hash.
    """

    __tablename__ = "link_previews"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    url_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    site_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    og_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    favicon_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    original_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_full_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_thumb_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'success', 'error', 'no_preview')",
            name="ck_link_previews_status",
        ),
        CheckConstraint("expires_at > fetched_at", name="ck_link_previews_expiry_order"),
        Index("ix_link_previews_expires_at", "expires_at"),
        Index("ix_link_previews_status", "status"),
    )


class OembedCache(Base):
    """Cached provider embed (instagram/facebook/threads), keyed by url_hash."""

    __tablename__ = "oembed_cache"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    url_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    html: Mapped[str] = mapped_column(Text, nullable=False)
    author_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thumbnail_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "provider IN ('instagram', 'facebook', 'threads')",
            name="ck_oembed_cache_provider",
        ),
        CheckConstraint("expires_at > fetched_at", name="ck_oembed_cache_expiry_order"),
        Index("ix_oembed_cache_expires_at", "expires_at"),
    )


# =============================================================================
# Identity and chat tables (owned by collaborators, read or patched here)
# =============================================================================


class User(Base):
    """Authenticated account."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Player(Base):
    """Roster profile. Linked to a user directly or matched by email."""

    __tablename__ = "players"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    email_lowercase: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_players_email_lowercase", "email_lowercase"),)


class AuthSession(Base):
    """Login session. The primary key is the opaque session token."""

    __tablename__ = "auth_sessions"

    token: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Conversation(Base):
    """Chat conversation (team chat or direct message)."""

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    participants: Mapped[list["ConversationParticipant"]] = relationship(
        "ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan"
    )


class ConversationParticipant(Base):
    """Membership of a player in a conversation."""

    __tablename__ = "conversation_participants"

    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    player_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("players.id", ondelete="CASCADE"), primary_key=True
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="participants"
    )


class Message(Base):
    """Chat message.

    `embeds` holds one entry per distinct URL in the body:
    {"type", "url", "url_hash", "status", "error_message"?}.
    Entries are only mutated through the embed projector, which bumps
    `embeds_version` on every write.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    author_player_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("players.id", ondelete="SET NULL"), nullable=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    embeds: Mapped[list[dict[str, Any]]] = mapped_column(EmbedsJSON, nullable=False, default=list)
    embeds_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_messages_conversation_id", "conversation_id"),)
