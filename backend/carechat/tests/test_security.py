from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from carechat.apps.accounts import models as account_models
from carechat.errors import Unauthorized
from carechat.security import (
    create_access_token,
    decode_access_token,
    get_current_active_user,
    get_current_user,
    get_user_from_token,
)


def _user(db_session, username, is_active=True):
    user = account_models.User(username=username, email=f"{username}@example.com", is_active=is_active)
    db_session.add(user)
    db_session.commit()
    return user


def test_token_round_trip_returns_subject():
    token = create_access_token(data={"sub": "USR-12345678"})
    assert decode_access_token(token) == "USR-12345678"


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_decode_rejects_missing_or_garbage_tokens(token):
    with pytest.raises(Unauthorized):
        decode_access_token(token)


def test_expired_token_is_rejected():
    token = create_access_token(data={"sub": "USR-12345678"}, expires_delta=timedelta(minutes=-1))
    with pytest.raises(Unauthorized):
        decode_access_token(token)


def test_token_without_subject_is_rejected():
    with pytest.raises(Unauthorized):
        decode_access_token(create_access_token(data={"role": "USER"}))


def test_realtime_token_check_requires_an_active_user(db_session):
    active = _user(db_session, "active")
    dormant = _user(db_session, "dormant", is_active=False)

    assert get_user_from_token(db_session, create_access_token(data={"sub": active.id})).id == active.id
    with pytest.raises(Unauthorized):
        get_user_from_token(db_session, create_access_token(data={"sub": dormant.id}))
    with pytest.raises(Unauthorized):
        get_user_from_token(db_session, create_access_token(data={"sub": "USR-UNKNOWN"}))


def test_current_user_dependency_explains_missing_bearer(db_session):
    try:
        get_current_user(credentials=None, db=db_session)
        assert False, "Expected HTTPException"
    except HTTPException as exc:
        assert exc.status_code == 401
        assert exc.detail == "Missing Bearer token. Send header: Authorization: Bearer <JWT>"
        assert exc.headers == {"WWW-Authenticate": "Bearer"}


def test_current_user_dependency_accepts_valid_bearer(db_session):
    user = _user(db_session, "nurse")
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=create_access_token(data={"sub": user.id}))

    assert get_current_user(credentials=credentials, db=db_session).id == user.id


def test_inactive_user_is_blocked_with_400(db_session):
    dormant = _user(db_session, "dormant", is_active=False)

    with pytest.raises(HTTPException) as exc:
        get_current_active_user(current_user=dormant)
    assert exc.value.status_code == 400
    assert exc.value.detail == "Inactive user account"
