from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["DATABASE_WRITE_URL"] = TEST_DATABASE_URL
os.environ["SECRET_KEY"] = "test-secret-key"

from carechat.database import Base, engine_kwargs  # noqa: E402
from carechat.apps.accounts import models as account_models  # noqa: E402
from carechat.apps.chat import models as chat_models  # noqa: E402


@pytest.fixture()
def session_factory():
    # One shared connection: the gateway opens its own sessions in worker
    # threads and must see the same in-memory database.
    engine = create_engine(TEST_DATABASE_URL, **engine_kwargs(TEST_DATABASE_URL))
    Base.metadata.create_all(
        bind=engine,
        tables=[
            account_models.User.__table__,
            chat_models.ChatSession.__table__,
            chat_models.ChatParticipant.__table__,
            chat_models.ChatMessage.__table__,
            chat_models.MessageRead.__table__,
            chat_models.UserPresence.__table__,
        ],
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    try:
        yield TestingSession
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
