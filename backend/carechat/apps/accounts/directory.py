from __future__ import annotations

from typing import Iterable, Optional, Union

from sqlalchemy.orm import Session

from . import models


def get_user(db: Session, user_id: Union[str, int, None]) -> Optional[models.User]:
    # User.id is String(36); do not coerce to int.
    if user_id is None:
        return None
    normalised_id = str(user_id).strip()
    if not normalised_id:
        return None
    return db.query(models.User).filter(models.User.id == normalised_id).first()


def get_active_user(db: Session, user_id: Union[str, int, None]) -> Optional[models.User]:
    user = get_user(db, user_id)
    if user is None or not user.is_active:
        return None
    return user


def get_users(db: Session, user_ids: Iterable[str]) -> dict[str, models.User]:
    ids = {str(user_id) for user_id in user_ids if user_id}
    if not ids:
        return {}
    rows = db.query(models.User).filter(models.User.id.in_(ids)).all()
    return {row.id: row for row in rows}


def display_name(user: models.User) -> str:
    if user.is_anonymous or not user.full_name:
        return user.username
    return user.full_name


def public_profile(user: Optional[models.User]) -> Optional[dict]:
    """Display fields other members may see."""
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "fullName": None if user.is_anonymous else user.full_name,
        "avatarURL": None if user.is_anonymous else user.avatar_url,
    }
