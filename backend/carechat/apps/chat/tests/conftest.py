from __future__ import annotations

import itertools

import pytest

from carechat.apps.accounts import models as account_models
from carechat.apps.chat import messages, schemas, sessions
from carechat.apps.chat.rooms import ClientConnection, Identity


class FakeConnection(ClientConnection):
    """Records every frame instead of writing to a socket."""

    def __init__(self, user, connection_id=None, fail=False):
        super().__init__(Identity.from_user(user), connection_id)
        self.sent = []
        self.fail = fail

    async def send(self, event, data):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append((event, data))

    def events(self, name):
        return [data for event, data in self.sent if event == name]

    def names(self):
        return [event for event, _ in self.sent]


@pytest.fixture()
def make_user(db_session):
    counter = itertools.count(1)

    def _make(username=None, **fields):
        n = next(counter)
        username = username or f"member{n}"
        user = account_models.User(
            username=username,
            email=f"{username}@example.com",
            full_name=fields.get("full_name"),
            avatar_url=fields.get("avatar_url"),
            is_active=fields.get("is_active", True),
            is_anonymous=fields.get("is_anonymous", False),
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture()
def alice(make_user):
    return make_user("alice", full_name="Alice Able", avatar_url="https://cdn.example.com/a.png")


@pytest.fixture()
def bob(make_user):
    return make_user("bob", full_name="Bob Baker")


@pytest.fixture()
def carol(make_user):
    return make_user("carol", full_name="Carol Chen")


@pytest.fixture()
def fake_connection():
    return FakeConnection


@pytest.fixture()
def direct_chat(db_session, alice, bob):
    return sessions.create_direct(db_session, user_id=alice.id, target_user_id=bob.id).chat_id


@pytest.fixture()
def send_text(db_session):
    def _send(user, chat_id, content="hello", **fields):
        payload = schemas.SendMessageRequest(content=content, **fields)
        return messages.send(db_session, user_id=user.id, chat_id=chat_id, payload=payload)

    return _send
