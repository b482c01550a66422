"""Access gate for cached and re-hosted link preview images.

authorize_image_access() decides whether the holder of a session token
may read images attached to a conversation. Checks run in order and stop
at the first failure:

1. The token resolves to a session that has not expired
2. The session has a user, and the user maps to exactly one player
   (direct link first, then by lowercased email)
3. The conversation exists
4. The player participates in the conversation

Each failure has its own reason for logs; callers only surface a generic
rejection to clients.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from unfurl.db.models import AuthSession, Conversation, ConversationParticipant, Player, User


class DenialReason(str, Enum):
    invalid_session = "invalid session"
    expired = "expired"
    no_user = "no user"
    player_not_found = "player not found"
    conversation_not_found = "conversation not found"
    not_a_participant = "not a participant"


@dataclass(frozen=True)
class AccessDecision:
    """Allowed, or denied with a reason."""

    allowed: bool
    reason: DenialReason | None = None
    player_id: UUID | None = None

    @classmethod
    def allow(cls, player_id: UUID) -> "AccessDecision":
        return cls(allowed=True, player_id=player_id)

    @classmethod
    def deny(cls, reason: DenialReason) -> "AccessDecision":
        return cls(allowed=False, reason=reason)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def resolve_player(session: Session, user: User) -> Player | None:
    """The single player profile of a user, or None when absent or ambiguous."""
    player = session.scalar(select(Player).where(Player.user_id == user.id))
    if player is not None:
        return player

    if not user.email:
        return None

    matches = session.scalars(
        select(Player).where(Player.email_lowercase == user.email.strip().lower()).limit(2)
    ).all()
    if len(matches) != 1:
        return None
    return matches[0]


def authorize_image_access(
    session: Session,
    session_token: str,
    conversation_id: UUID,
    now: datetime | None = None,
) -> AccessDecision:
    """Authorize a viewer for one conversation's images."""
    now = now or datetime.now(UTC)

    auth_session = session.get(AuthSession, session_token) if session_token else None
    if auth_session is None:
        return AccessDecision.deny(DenialReason.invalid_session)

    if auth_session.expires_at is not None and _as_utc(auth_session.expires_at) < now:
        return AccessDecision.deny(DenialReason.expired)

    user = session.get(User, auth_session.user_id) if auth_session.user_id else None
    if user is None:
        return AccessDecision.deny(DenialReason.no_user)

    player = resolve_player(session, user)
    if player is None:
        return AccessDecision.deny(DenialReason.player_not_found)

    if session.get(Conversation, conversation_id) is None:
        return AccessDecision.deny(DenialReason.conversation_not_found)

    is_participant = session.scalar(
        select(
            exists().where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.player_id == player.id,
            )
        )
    )
    if not is_participant:
        return AccessDecision.deny(DenialReason.not_a_participant)

    return AccessDecision.allow(player.id)
