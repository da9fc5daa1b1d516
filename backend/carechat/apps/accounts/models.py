# backend/carechat/apps/accounts/models.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String

from carechat.database import Base
from carechat.user_id import generate_user_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Member account as seen by the chat core.

    NOTE ON ANONYMOUS ACCOUNTS:
    - is_anonymous = True hides the member's real name and avatar from
      everyone else; the username is a pseudonym and stays visible.
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_user_id,
    )

    username = Column(String(64), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)

    full_name = Column(String(255), nullable=True)
    avatar_url = Column(String(1024), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_anonymous = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User id={self.id} username={self.username!r}>"
