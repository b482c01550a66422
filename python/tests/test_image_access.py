"""Tests for the conversation image access gate."""

from datetime import timedelta
from uuid import uuid4

from unfurl.auth import DenialReason, authorize_image_access
from tests.factories import (
    create_test_conversation,
    create_test_player,
    create_test_session,
    create_test_user,
    create_viewer,
)


class TestAuthorizeImageAccess:
    def test_participant_is_allowed(self, db_session):
        auth_session, conversation, player = create_viewer(db_session)

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.player_id == player.id

    def test_unknown_token(self, db_session):
        _, conversation, _ = create_viewer(db_session)
        decision = authorize_image_access(db_session, "no-such-token", conversation.id)
        assert decision.allowed is False
        assert decision.reason == DenialReason.invalid_session

    def test_empty_token(self, db_session):
        _, conversation, _ = create_viewer(db_session)
        decision = authorize_image_access(db_session, "", conversation.id)
        assert decision.reason == DenialReason.invalid_session

    def test_expired_session(self, db_session):
        user = create_test_user(db_session)
        player = create_test_player(db_session, user=user)
        conversation = create_test_conversation(db_session, participants=[player])
        auth_session = create_test_session(db_session, user, expires_in=timedelta(minutes=-1))

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)
        assert decision.reason == DenialReason.expired

    def test_session_without_expiry_is_valid(self, db_session):
        user = create_test_user(db_session)
        player = create_test_player(db_session, user=user)
        conversation = create_test_conversation(db_session, participants=[player])
        auth_session = create_test_session(db_session, user, expires_in=None)

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)
        assert decision.allowed is True

    def test_session_without_user(self, db_session):
        _, conversation, _ = create_viewer(db_session)
        anonymous = create_test_session(db_session, None)

        decision = authorize_image_access(db_session, anonymous.token, conversation.id)
        assert decision.reason == DenialReason.no_user

    def test_user_without_player(self, db_session):
        _, conversation, _ = create_viewer(db_session)
        stranger = create_test_user(db_session)
        auth_session = create_test_session(db_session, stranger)

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)
        assert decision.reason == DenialReason.player_not_found

    def test_player_matched_by_email(self, db_session):
        user = create_test_user(db_session, email="Coach@Example.com")
        player = create_test_player(db_session, email="coach@example.com")
        conversation = create_test_conversation(db_session, participants=[player])
        auth_session = create_test_session(db_session, user)

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)
        assert decision.allowed is True
        assert decision.player_id == player.id

    def test_ambiguous_email_match_is_denied(self, db_session):
        user = create_test_user(db_session, email="shared@example.com")
        first = create_test_player(db_session, email="shared@example.com")
        create_test_player(db_session, email="shared@example.com")
        conversation = create_test_conversation(db_session, participants=[first])
        auth_session = create_test_session(db_session, user)

        decision = authorize_image_access(db_session, auth_session.token, conversation.id)
        assert decision.reason == DenialReason.player_not_found

    def test_unknown_conversation(self, db_session):
        auth_session, _, _ = create_viewer(db_session)
        decision = authorize_image_access(db_session, auth_session.token, uuid4())
        assert decision.reason == DenialReason.conversation_not_found

    def test_non_participant(self, db_session):
        auth_session, _, _ = create_viewer(db_session)
        other_conversation = create_test_conversation(db_session)

        decision = authorize_image_access(db_session, auth_session.token, other_conversation.id)
        assert decision.reason == DenialReason.not_a_participant
