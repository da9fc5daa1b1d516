from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from carechat.errors import Forbidden, NotFound

from . import models


def active_participant(session: models.ChatSession, user_id: str) -> Optional[models.ChatParticipant]:
    for participant in session.participants:
        if participant.user_id == user_id and participant.is_active:
            return participant
    return None


def can_access(user_id: str, session: models.ChatSession) -> bool:
    """Membership check only; the caller decides what an inactive session means."""
    if session.type == models.ChatType.DIRECT:
        return user_id in (session.user1_id, session.user2_id)
    return active_participant(session, user_id) is not None


def is_group_admin(session: models.ChatSession, user_id: str) -> bool:
    if session.type != models.ChatType.GROUP:
        return False
    participant = active_participant(session, user_id)
    return participant is not None and participant.role == models.ParticipantRole.ADMIN


def get_session_or_404(db: Session, chat_id: str) -> models.ChatSession:
    session = db.get(models.ChatSession, str(chat_id)) if chat_id else None
    if session is None or not session.is_active:
        raise NotFound("Chat session not found")
    return session


def load_accessible_session(db: Session, user_id: str, chat_id: str) -> models.ChatSession:
    session = get_session_or_404(db, chat_id)
    if not can_access(user_id, session):
        raise Forbidden("Access denied to this chat")
    return session
