import pytest

from carechat.apps.chat import access, models, sessions
from carechat.errors import Forbidden, NotFound


def test_direct_access_is_limited_to_the_two_fixed_users(db_session, alice, bob, carol, direct_chat):
    session = db_session.get(models.ChatSession, direct_chat)

    assert access.can_access(alice.id, session)
    assert access.can_access(bob.id, session)
    assert not access.can_access(carol.id, session)


def test_group_access_follows_active_participant_rows(db_session, alice, bob):
    created = sessions.create_group(db_session, user_id=alice.id, name="Support Circle", participant_ids=[bob.id])
    session = db_session.get(models.ChatSession, created.chat_id)
    assert access.can_access(bob.id, session)

    sessions.leave_or_delete(db_session, user_id=bob.id, chat_id=created.chat_id)
    assert not access.can_access(bob.id, session)
    assert access.is_group_admin(session, alice.id)
    assert not access.is_group_admin(session, bob.id)


def test_load_accessible_session_distinguishes_missing_and_forbidden(db_session, carol, direct_chat):
    with pytest.raises(NotFound):
        access.load_accessible_session(db_session, carol.id, "no-such-chat")
    with pytest.raises(Forbidden) as exc:
        access.load_accessible_session(db_session, carol.id, direct_chat)
    assert exc.value.detail == "Access denied to this chat"


def test_inactive_session_reads_as_missing(db_session, alice, direct_chat):
    sessions.leave_or_delete(db_session, user_id=alice.id, chat_id=direct_chat)
    with pytest.raises(NotFound):
        access.load_accessible_session(db_session, alice.id, direct_chat)
