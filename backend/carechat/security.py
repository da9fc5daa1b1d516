# backend/carechat/security.py

"""
Security helpers for CareChat.

Responsibilities:
- JWT access token creation and decoding
- FastAPI dependencies for the current user
- Token checks for realtime connections

Tokens are issued by the platform's identity service; this service only
verifies them. The `sub` claim carries the user id.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .database import get_db
from .errors import Unauthorized
from carechat.apps.accounts import directory
from carechat.apps.accounts import models as account_models

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------

# In production, ALWAYS override these via environment variables.
SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

try:
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")
    )
except ValueError:
    ACCESS_TOKEN_EXPIRE_MINUTES = 60

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# JWT TOKENS
# ---------------------------------------------------------------------------


def create_access_token(
    *,
    data: dict,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT.

    The `data` dict should already include the subject, e.g.:
        {"sub": user.id}
    """
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: Optional[str]) -> str:
    """Return the subject of a valid token or raise Unauthorized."""
    if not token:
        raise Unauthorized()
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized()
    user_id: Optional[Union[str, int]] = payload.get("sub")
    if user_id is None:
        raise Unauthorized()
    return str(user_id)


def get_user_from_token(db: Session, token: Optional[str]) -> account_models.User:
    """
    Resolve a bearer token to an active user.

    Every failure (missing, malformed, expired, unknown or deactivated user)
    raises the same Unauthorized so callers cannot tell which part failed.
    """
    user_id = decode_access_token(token)
    user = directory.get_active_user(db, user_id)
    if user is None:
        raise Unauthorized()
    return user


# ---------------------------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------------------------


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> account_models.User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing Bearer token. Send header: Authorization: Bearer <JWT>")

    user = directory.get_user(db, decode_access_token(credentials.credentials))
    if user is None:
        raise Unauthorized()
    return user


def get_current_active_user(
    current_user: account_models.User = Depends(get_current_user),
) -> account_models.User:
    """
    Ensure the current user is active.

    Deactivated users are blocked here rather than deeper in the app.
    """
    if not getattr(current_user, "is_active", False):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user account",
        )
    return current_user
