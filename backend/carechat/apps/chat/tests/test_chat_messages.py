from datetime import timedelta

import pytest

from carechat.apps.chat import messages, models, schemas, sessions
from carechat.errors import BadRequest, Forbidden, NotFound
from carechat.utils.identifiers import as_utc, utcnow


def _backdate(db, message_id, minutes):
    row = db.get(models.ChatMessage, message_id)
    row.created_at = utcnow() - timedelta(minutes=minutes)
    db.commit()
    return row


def test_send_stores_text_and_touches_session(db_session, alice, bob, direct_chat, send_text):
    before = as_utc(db_session.get(models.ChatSession, direct_chat).last_activity)

    sent = send_text(alice, direct_chat, "  hello bob  ")

    assert sent.content == "hello bob"
    assert sent.type == models.MessageType.TEXT
    assert sent.sender_id == alice.id
    assert sent.sender.username == "alice"
    assert sent.is_edited is False
    assert sent.delivered_at is not None
    assert sent.read_by == []
    assert as_utc(db_session.get(models.ChatSession, direct_chat).last_activity) >= before
    wire = sent.wire()
    assert wire["chatId"] == direct_chat
    assert "mediaURL" in wire and "isEdited" in wire


def test_message_body_variants(db_session, alice, direct_chat, send_text):
    with pytest.raises(BadRequest) as exc:
        send_text(alice, direct_chat, "   ")
    assert exc.value.detail == "Message content or media required"

    with pytest.raises(BadRequest):
        send_text(alice, direct_chat, "caption only", type="IMAGE")

    untyped = send_text(alice, direct_chat, None, media_url="https://cdn.example.com/f.bin")
    assert untyped.type == models.MessageType.MEDIA
    assert untyped.content is None

    image = send_text(
        alice,
        direct_chat,
        "sunset",
        type="IMAGE",
        media_url="https://cdn.example.com/s.jpg",
        media_type="image/jpeg",
        media_size=2048,
    )
    assert image.type == models.MessageType.IMAGE
    assert image.content == "sunset"
    assert image.media_size == 2048


def test_reply_must_point_into_the_same_chat(db_session, alice, bob, carol, direct_chat, send_text):
    original = send_text(bob, direct_chat, "how are you?")
    reply = send_text(alice, direct_chat, "good", reply_to_id=original.id)
    assert reply.reply_to_id == original.id
    assert reply.reply_to.content == "how are you?"
    assert reply.reply_to.sender.username == "bob"

    elsewhere = sessions.create_direct(db_session, user_id=alice.id, target_user_id=carol.id).chat_id
    with pytest.raises(BadRequest) as exc:
        send_text(alice, elsewhere, "wrong thread", reply_to_id=original.id)
    assert exc.value.detail == "Reply-to message not found in this chat"


def test_list_messages_is_oldest_first_and_paged_from_the_newest(db_session, alice, bob, direct_chat, send_text):
    ids = [send_text(alice, direct_chat, f"m{i}").id for i in range(5)]
    for age, message_id in zip((50, 40, 30, 20, 10), ids):
        _backdate(db_session, message_id, age)

    newest = messages.list_messages(db_session, user_id=bob.id, chat_id=direct_chat, limit=2)
    older = messages.list_messages(db_session, user_id=bob.id, chat_id=direct_chat, page=2, limit=2)

    assert [m.id for m in newest.messages] == ids[3:]
    assert [m.id for m in older.messages] == ids[1:3]
    assert newest.pagination.total == 5
    assert newest.pagination.total_pages == 3
    assert newest.pagination.has_next is True


def test_list_messages_before_and_after_cursors(db_session, alice, bob, direct_chat, send_text):
    ids = [send_text(alice, direct_chat, f"m{i}").id for i in range(4)]
    rows = [_backdate(db_session, message_id, age) for message_id, age in zip(ids, (40, 30, 20, 10))]

    before = messages.list_messages(db_session, user_id=bob.id, chat_id=direct_chat, before=rows[2].created_at)
    after = messages.list_messages(db_session, user_id=bob.id, chat_id=direct_chat, after=rows[1].created_at)

    assert [m.id for m in before.messages] == ids[:2]
    assert [m.id for m in after.messages] == ids[2:]


def test_fetching_history_stamps_undelivered_messages_from_others(db_session, alice, bob, direct_chat, send_text):
    sent = send_text(alice, direct_chat, "queued")
    row = db_session.get(models.ChatMessage, sent.id)
    row.delivered_at = None
    db_session.commit()

    own = messages.list_messages(db_session, user_id=alice.id, chat_id=direct_chat)
    assert own.messages[0].delivered_at is None

    fetched = messages.list_messages(db_session, user_id=bob.id, chat_id=direct_chat)
    assert fetched.messages[0].delivered_at is not None
    db_session.expire_all()
    assert db_session.get(models.ChatMessage, sent.id).delivered_at is not None


def test_edit_rules(db_session, alice, bob, carol, direct_chat, send_text):
    text = send_text(alice, direct_chat, "helo")
    media = send_text(alice, direct_chat, None, media_url="https://cdn.example.com/x.png", type="IMAGE")

    with pytest.raises(BadRequest):
        messages.edit(db_session, user_id=alice.id, message_id=text.id, content="   ")
    with pytest.raises(NotFound):
        messages.edit(db_session, user_id=alice.id, message_id="missing", content="x")
    with pytest.raises(Forbidden):
        messages.edit(db_session, user_id=carol.id, message_id=text.id, content="x")
    with pytest.raises(Forbidden) as exc:
        messages.edit(db_session, user_id=bob.id, message_id=text.id, content="x")
    assert exc.value.detail == "Can only edit your own messages"
    with pytest.raises(BadRequest) as exc:
        messages.edit(db_session, user_id=alice.id, message_id=media.id, content="x")
    assert exc.value.detail == "Can only edit text messages"

    edited = messages.edit(db_session, user_id=alice.id, message_id=text.id, content="hello")
    assert edited.content == "hello"
    assert edited.is_edited is True
    assert edited.edited_at is not None


def test_edit_window_closes_after_fifteen_minutes(db_session, alice, direct_chat, send_text):
    fresh = send_text(alice, direct_chat, "just now")
    stale = send_text(alice, direct_chat, "a while ago")
    _backdate(db_session, fresh.id, 14)
    _backdate(db_session, stale.id, 16)

    assert messages.edit(db_session, user_id=alice.id, message_id=fresh.id, content="still ok").is_edited
    with pytest.raises(BadRequest) as exc:
        messages.edit(db_session, user_id=alice.id, message_id=stale.id, content="too late")
    assert exc.value.detail == "Message too old to edit"


def test_delete_by_sender_removes_receipts_and_detaches_replies(db_session, alice, bob, direct_chat, send_text):
    original = send_text(alice, direct_chat, "delete me")
    reply = send_text(bob, direct_chat, "replying", reply_to_id=original.id)
    messages.mark_read(db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[original.id])
    db_session.expire_all()

    with pytest.raises(Forbidden):
        messages.delete(db_session, user_id=bob.id, message_id=original.id)

    deleted = messages.delete(db_session, user_id=alice.id, message_id=original.id)

    assert deleted.wire() == {"messageId": original.id, "chatId": direct_chat}
    db_session.expire_all()
    assert db_session.get(models.ChatMessage, original.id) is None
    assert db_session.query(models.MessageRead).count() == 0
    survivor = db_session.get(models.ChatMessage, reply.id)
    assert survivor.content == "replying"
    assert survivor.reply_to_id is None


def test_group_admin_may_delete_any_message(db_session, alice, bob, carol):
    group = sessions.create_group(db_session, user_id=alice.id, name="Circle", participant_ids=[bob.id, carol.id])
    payload = schemas.SendMessageRequest(content="off topic")
    posted = messages.send(db_session, user_id=bob.id, chat_id=group.chat_id, payload=payload)

    with pytest.raises(Forbidden):
        messages.delete(db_session, user_id=carol.id, message_id=posted.id)
    assert messages.delete(db_session, user_id=alice.id, message_id=posted.id).message_id == posted.id


def test_mark_read_is_idempotent_and_validates_ids(db_session, alice, bob, carol, direct_chat, send_text):
    first = send_text(alice, direct_chat, "one")
    second = send_text(alice, direct_chat, "two")
    other_chat = sessions.create_direct(db_session, user_id=alice.id, target_user_id=carol.id).chat_id
    stray = send_text(alice, other_chat, "not here")

    with pytest.raises(BadRequest):
        messages.mark_read(db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[])
    with pytest.raises(BadRequest) as exc:
        messages.mark_read(db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[first.id, stray.id])
    assert exc.value.detail == "Some messages do not belong to this chat"

    result = messages.mark_read(
        db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[first.id, second.id, first.id]
    )
    again = messages.mark_read(db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[first.id])

    assert result.message_ids == [first.id, second.id]
    assert result.read_by == bob.id
    assert again.read_at >= result.read_at
    rows = db_session.query(models.MessageRead).filter_by(user_id=bob.id, message_id=first.id).all()
    assert len(rows) == 1


def test_unread_count_drops_to_zero_after_reading(db_session, alice, bob, direct_chat, send_text):
    sent = [send_text(alice, direct_chat, f"note {i}") for i in range(3)]
    send_text(bob, direct_chat, "own messages never count")

    assert messages.unread_count(db_session, user_id=bob.id, chat_id=direct_chat).unread_count == 3
    messages.mark_read(db_session, user_id=bob.id, chat_id=direct_chat, message_ids=[m.id for m in sent])
    assert messages.unread_count(db_session, user_id=bob.id, chat_id=direct_chat).unread_count == 0
    assert messages.unread_count(db_session, user_id=alice.id, chat_id=direct_chat).unread_count == 1


def test_search_matches_content_case_insensitively(db_session, alice, bob, direct_chat, send_text):
    send_text(alice, direct_chat, "Medication reminder at 9")
    send_text(bob, direct_chat, "thanks!")
    send_text(bob, direct_chat, "took 100% of the dose")

    found = messages.search(db_session, user_id=bob.id, chat_id=direct_chat, query=" medication ")
    assert [m.content for m in found.messages] == ["Medication reminder at 9"]
    assert found.search_query == "medication"
    assert found.pagination.total == 1

    literal = messages.search(db_session, user_id=bob.id, chat_id=direct_chat, query="0%")
    assert [m.content for m in literal.messages] == ["took 100% of the dose"]

    with pytest.raises(BadRequest):
        messages.search(db_session, user_id=bob.id, chat_id=direct_chat, query="  ")


def test_outsider_is_refused_everywhere(db_session, alice, carol, direct_chat, send_text):
    sent = send_text(alice, direct_chat, "private")

    with pytest.raises(Forbidden):
        messages.list_messages(db_session, user_id=carol.id, chat_id=direct_chat)
    with pytest.raises(Forbidden):
        messages.send(
            db_session, user_id=carol.id, chat_id=direct_chat, payload=schemas.SendMessageRequest(content="hi")
        )
    with pytest.raises(Forbidden):
        messages.mark_read(db_session, user_id=carol.id, chat_id=direct_chat, message_ids=[sent.id])
    with pytest.raises(Forbidden):
        messages.search(db_session, user_id=carol.id, chat_id=direct_chat, query="private")
    with pytest.raises(Forbidden):
        messages.delete(db_session, user_id=carol.id, message_id=sent.id)
    with pytest.raises(Forbidden):
        sessions.get_session(db_session, user_id=carol.id, chat_id=direct_chat)


def test_conversation_round_trip(db_session, alice, bob, send_text):
    created = sessions.create_direct(db_session, user_id=alice.id, target_user_id=bob.id)
    sent = send_text(alice, created.chat_id, "Hi Bob")

    listing = sessions.list_sessions(db_session, user_id=bob.id)
    assert listing.chat_sessions[0].unread_count == 1
    assert listing.chat_sessions[0].last_message.content == "Hi Bob"

    history = messages.list_messages(db_session, user_id=bob.id, chat_id=created.chat_id)
    assert [m.content for m in history.messages] == ["Hi Bob"]

    messages.mark_read(db_session, user_id=bob.id, chat_id=created.chat_id, message_ids=[sent.id])
    db_session.expire_all()

    seen = messages.list_messages(db_session, user_id=alice.id, chat_id=created.chat_id).messages[0]
    assert [receipt.user_id for receipt in seen.read_by] == [bob.id]
    assert db_session.query(models.MessageRead).filter_by(message_id=sent.id, user_id=bob.id).count() == 1
    assert sessions.list_sessions(db_session, user_id=bob.id).chat_sessions[0].unread_count == 0
