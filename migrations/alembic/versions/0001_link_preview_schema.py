"""Link preview schema - preview and oEmbed caches, identity, chat messages

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates:
- link_previews / oembed_cache: URL-keyed caches (unique url_hash,
  expires_at index for the sweeper, expires_at > fetched_at)
- users, players, auth_sessions: identity tables read by the image gate
- conversations, conversation_participants, messages: chat tables; the
  messages.embeds JSONB array is patched under embeds_version
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False, server_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()") if server_now else None,
        nullable=nullable,
    )


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", sa.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # ==========================================================================
    # link_previews
    # ==========================================================================
    op.create_table(
        "link_previews",
        _uuid_pk(),
        sa.Column("url_hash", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("canonical_url", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("site_name", sa.Text(), nullable=True),
        sa.Column("og_type", sa.Text(), nullable=True),
        sa.Column("favicon_url", sa.Text(), nullable=True),
        sa.Column("original_image_url", sa.Text(), nullable=True),
        sa.Column("image_full_ref", sa.Text(), nullable=True),
        sa.Column("image_thumb_ref", sa.Text(), nullable=True),
        sa.Column("image_width", sa.Integer(), nullable=True),
        sa.Column("image_height", sa.Integer(), nullable=True),
        _timestamp("fetched_at"),
        _timestamp("expires_at"),
        _timestamp("created_at", server_now=True),
        _timestamp("updated_at", server_now=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("url_hash", name="uq_link_previews_url_hash"),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'error', 'no_preview')",
            name="ck_link_previews_status",
        ),
        sa.CheckConstraint("expires_at > fetched_at", name="ck_link_previews_expiry_order"),
    )
    op.create_index("ix_link_previews_expires_at", "link_previews", ["expires_at"])
    op.create_index("ix_link_previews_status", "link_previews", ["status"])

    # ==========================================================================
    # oembed_cache
    # ==========================================================================
    op.create_table(
        "oembed_cache",
        _uuid_pk(),
        sa.Column("url_hash", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("html", sa.Text(), nullable=False),
        sa.Column("author_name", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("thumbnail_width", sa.Integer(), nullable=True),
        sa.Column("thumbnail_height", sa.Integer(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        _timestamp("fetched_at"),
        _timestamp("expires_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("url_hash", name="uq_oembed_cache_url_hash"),
        sa.CheckConstraint(
            "provider IN ('instagram', 'facebook', 'threads')",
            name="ck_oembed_cache_provider",
        ),
        sa.CheckConstraint("expires_at > fetched_at", name="ck_oembed_cache_expiry_order"),
    )
    op.create_index("ix_oembed_cache_expires_at", "oembed_cache", ["expires_at"])

    # ==========================================================================
    # identity
    # ==========================================================================
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.Text(), nullable=True),
        _timestamp("created_at", server_now=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "players",
        _uuid_pk(),
        sa.Column("user_id", sa.UUID(), nullable=True),
        sa.Column("email_lowercase", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_players_user_id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_players_email_lowercase", "players", ["email_lowercase"])

    op.create_table(
        "auth_sessions",
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=True),
        _timestamp("expires_at", nullable=True),
        _timestamp("created_at", server_now=True),
        sa.PrimaryKeyConstraint("token"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    # ==========================================================================
    # chat
    # ==========================================================================
    op.create_table(
        "conversations",
        _uuid_pk(),
        sa.Column("name", sa.Text(), nullable=True),
        _timestamp("created_at", server_now=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "conversation_participants",
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column("player_id", sa.UUID(), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id", "player_id"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "messages",
        _uuid_pk(),
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column("author_player_id", sa.UUID(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column(
            "embeds",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("embeds_version", sa.Integer(), server_default="0", nullable=False),
        _timestamp("created_at", server_now=True),
        _timestamp("updated_at", server_now=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["author_player_id"], ["players.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])


def downgrade() -> None:
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")
    op.drop_table("conversation_participants")
    op.drop_table("conversations")
    op.drop_table("auth_sessions")
    op.drop_index("ix_players_email_lowercase", table_name="players")
    op.drop_table("players")
    op.drop_table("users")
    op.drop_index("ix_oembed_cache_expires_at", table_name="oembed_cache")
    op.drop_table("oembed_cache")
    op.drop_index("ix_link_previews_status", table_name="link_previews")
    op.drop_index("ix_link_previews_expires_at", table_name="link_previews")
    op.drop_table("link_previews")
