"""
Chat session lifecycle: direct and group chats.

Sessions are soft-deleted (is_active=False) so history and receipts survive.
A direct chat is unique per unordered pair of users; `pair_key` carries that
invariant in the database so concurrent creators converge on one row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from carechat.apps.accounts import directory
from carechat.apps.accounts import models as account_models
from carechat.errors import BadRequest, Forbidden, NotFound
from carechat.utils.identifiers import as_utc, utcnow

from . import access, messages, models, schemas

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True)
class LeaveResult:
    chat_id: str
    user_id: str
    ended: bool
    promoted_user_id: Optional[str] = None
    # Users whose connections must leave the chat room.
    departed: tuple[str, ...] = ()

    def wire(self) -> dict:
        return {
            "chatId": self.chat_id,
            "userId": self.user_id,
            "ended": self.ended,
            "promotedUserId": self.promoted_user_id,
        }


def member_ids(session: models.ChatSession) -> list[str]:
    if session.type == models.ChatType.DIRECT:
        return [uid for uid in (session.user1_id, session.user2_id) if uid]
    return [p.user_id for p in session.participants if p.is_active]


def counterpart(session: models.ChatSession, user_id: str) -> Optional[account_models.User]:
    if session.type != models.ChatType.DIRECT:
        return None
    return session.user2 if session.user1_id == user_id else session.user1


def chat_ids_for_user(db: Session, user_id: str) -> list[str]:
    """Active chats the user belongs to; drives room joins and presence fan-out."""
    direct = (
        db.query(models.ChatSession.id)
        .filter(
            models.ChatSession.is_active.is_(True),
            models.ChatSession.type == models.ChatType.DIRECT,
            or_(models.ChatSession.user1_id == user_id, models.ChatSession.user2_id == user_id),
        )
        .all()
    )
    groups = (
        db.query(models.ChatSession.id)
        .join(models.ChatParticipant, models.ChatParticipant.chat_id == models.ChatSession.id)
        .filter(
            models.ChatSession.is_active.is_(True),
            models.ChatSession.type == models.ChatType.GROUP,
            models.ChatParticipant.user_id == user_id,
            models.ChatParticipant.is_active.is_(True),
        )
        .all()
    )
    return sorted({row[0] for row in direct} | {row[0] for row in groups})


def _presence_map(db: Session, user_ids: Iterable[str]) -> dict[str, models.UserPresence]:
    ids = {uid for uid in user_ids if uid}
    if not ids:
        return {}
    rows = db.query(models.UserPresence).filter(models.UserPresence.user_id.in_(ids)).all()
    return {row.user_id: row for row in rows}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _visible_sessions(db: Session, user_id: str):
    group_ids = select(models.ChatParticipant.chat_id).where(
        models.ChatParticipant.user_id == user_id,
        models.ChatParticipant.is_active.is_(True),
    )
    return db.query(models.ChatSession).filter(
        models.ChatSession.is_active.is_(True),
        or_(
            and_(
                models.ChatSession.type == models.ChatType.DIRECT,
                or_(models.ChatSession.user1_id == user_id, models.ChatSession.user2_id == user_id),
            ),
            and_(
                models.ChatSession.type == models.ChatType.GROUP,
                models.ChatSession.id.in_(group_ids),
            ),
        ),
    )


def _search_filter(query, user_id: str, term: str):
    pattern = f"%{messages.escape_like(term)}%"
    other_users = []
    for column in (models.ChatSession.user1_id, models.ChatSession.user2_id):
        user = aliased(account_models.User)
        query = query.outerjoin(user, user.id == column)
        other_users.append(
            and_(
                column != user_id,
                or_(
                    user.username.ilike(pattern, escape="\\"),
                    and_(
                        user.is_anonymous.is_(False),
                        user.full_name.ilike(pattern, escape="\\"),
                    ),
                ),
            )
        )
    return query.filter(or_(models.ChatSession.name.ilike(pattern, escape="\\"), *other_users))


def _summary(
    session: models.ChatSession,
    user_id: str,
    unread: int,
    last: Optional[models.ChatMessage],
    presence: dict[str, models.UserPresence],
) -> schemas.ChatSummary:
    item = schemas.ChatSummary(
        id=session.id,
        type=session.type,
        last_activity=as_utc(session.last_activity),
        unread_count=unread,
        last_message=messages.serialize_message(last) if last is not None else None,
    )
    if session.type == models.ChatType.DIRECT:
        other = counterpart(session, user_id)
        state = presence.get(other.id) if other is not None else None
        item.participant = schemas.profile_of(other)
        item.name = directory.display_name(other) if other is not None else None
        item.avatar_url = item.participant.avatar_url if item.participant else None
        item.is_online = bool(state and state.is_online)
        item.last_seen = as_utc(state.last_seen) if state else None
    else:
        active = [p for p in session.participants if p.is_active]
        item.name = session.name
        item.description = session.description
        item.avatar_url = session.avatar_url
        item.participants = [schemas.profile_of(p.user) for p in active]
        item.participant_count = len(active)
    return item


def list_sessions(
    db: Session,
    *,
    user_id: str,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    search: Optional[str] = None,
) -> schemas.ChatList:
    page, limit = messages.page_bounds(page, limit, DEFAULT_PAGE_SIZE)
    query = _visible_sessions(db, user_id)
    term = (search or "").strip()
    if term:
        query = _search_filter(query, user_id, term)

    total = query.count()
    rows = (
        query.order_by(models.ChatSession.last_activity.desc(), models.ChatSession.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    unread = messages.unread_counts(db, user_id, [row.id for row in rows])
    others = [other.id for other in (counterpart(row, user_id) for row in rows) if other is not None]
    presence = _presence_map(db, others)
    items = [
        _summary(row, user_id, unread.get(row.id, 0), messages.latest_message(db, row.id), presence)
        for row in rows
    ]
    return schemas.ChatList(
        chat_sessions=items,
        pagination=schemas.Pagination.build(total=total, page=page, limit=limit),
    )


def _detail(db: Session, session: models.ChatSession, user_id: str) -> schemas.ChatDetail:
    detail = schemas.ChatDetail(
        id=session.id,
        type=session.type,
        created_at=as_utc(session.created_at),
        last_activity=as_utc(session.last_activity),
    )
    if session.type == models.ChatType.DIRECT:
        other = counterpart(session, user_id)
        state = _presence_map(db, [other.id]).get(other.id) if other is not None else None
        detail.participant = schemas.profile_of(other)
        detail.is_online = bool(state and state.is_online)
        detail.last_seen = as_utc(state.last_seen) if state else None
        return detail

    active = [p for p in session.participants if p.is_active]
    presence = _presence_map(db, [p.user_id for p in active])
    detail.name = session.name
    detail.description = session.description
    detail.avatar_url = session.avatar_url
    for participant in active:
        state = presence.get(participant.user_id)
        detail.participants.append(
            schemas.ParticipantRead(
                **schemas.profile_of(participant.user).model_dump(),
                role=participant.role,
                joined_at=as_utc(participant.joined_at),
                is_online=bool(state and state.is_online),
                last_seen=as_utc(state.last_seen) if state else None,
            )
        )
    return detail


def get_session(db: Session, *, user_id: str, chat_id: str) -> schemas.ChatDetail:
    session = access.load_accessible_session(db, user_id, chat_id)
    return _detail(db, session, user_id)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def _find_pair(db: Session, pair_key: str) -> Optional[models.ChatSession]:
    return db.query(models.ChatSession).filter(models.ChatSession.pair_key == pair_key).first()


def _direct_created(
    session: models.ChatSession,
    target: account_models.User,
    *,
    is_existing: bool,
    reactivated: bool = False,
) -> schemas.ChatCreated:
    return schemas.ChatCreated(
        chat_id=session.id,
        type=models.ChatType.DIRECT,
        is_existing=is_existing,
        reactivated=reactivated,
        participant=schemas.profile_of(target),
    )


def create_direct(db: Session, *, user_id: str, target_user_id: Optional[str]) -> schemas.ChatCreated:
    if not target_user_id:
        raise BadRequest("Target user ID is required for direct chat")
    if str(target_user_id) == str(user_id):
        raise BadRequest("Cannot create chat with yourself")
    target = directory.get_active_user(db, target_user_id)
    if target is None:
        raise NotFound("Target user not found or inactive")

    pair_key = models.direct_pair_key(user_id, target.id)
    existing = _find_pair(db, pair_key)
    if existing is not None:
        reactivated = not existing.is_active
        if reactivated:
            existing.is_active = True
            existing.last_activity = utcnow()
            db.commit()
            logger.info("Direct chat reactivated", extra={"chat_id": existing.id, "user_id": user_id})
        return _direct_created(existing, target, is_existing=True, reactivated=reactivated)

    session = models.ChatSession(
        type=models.ChatType.DIRECT,
        user1_id=user_id,
        user2_id=target.id,
        pair_key=pair_key,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the pair between our lookup and insert.
        db.rollback()
        existing = _find_pair(db, pair_key)
        if existing is None:
            raise
        return _direct_created(existing, target, is_existing=True)

    logger.info("Direct chat created", extra={"chat_id": session.id, "user_id": user_id})
    return _direct_created(session, target, is_existing=False)


def create_group(
    db: Session,
    *,
    user_id: str,
    name: Optional[str],
    description: Optional[str] = None,
    participant_ids: Iterable[str] = (),
) -> schemas.ChatCreated:
    name = (name or "").strip()
    if not name:
        raise BadRequest("Group name is required")

    invited = [uid for uid in dict.fromkeys(str(uid) for uid in participant_ids if uid) if uid != user_id]
    users = directory.get_users(db, invited)
    missing = [uid for uid in invited if uid not in users or not users[uid].is_active]
    if missing:
        raise NotFound("Target user not found or inactive")

    now = utcnow()
    session = models.ChatSession(
        type=models.ChatType.GROUP,
        name=name,
        description=description,
        created_at=now,
        last_activity=now,
    )
    try:
        db.add(session)
        db.flush()
        db.add(
            models.ChatParticipant(
                chat_id=session.id,
                user_id=user_id,
                role=models.ParticipantRole.ADMIN,
                joined_at=now,
            )
        )
        for uid in invited:
            db.add(
                models.ChatParticipant(
                    chat_id=session.id,
                    user_id=uid,
                    role=models.ParticipantRole.MEMBER,
                    joined_at=now,
                )
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Group chat created",
        extra={"chat_id": session.id, "user_id": user_id, "members": len(invited) + 1},
    )
    return schemas.ChatCreated(
        chat_id=session.id,
        type=models.ChatType.GROUP,
        name=session.name,
        description=session.description,
    )


def create_chat(db: Session, *, user_id: str, payload: schemas.CreateChatRequest) -> schemas.ChatCreated:
    if payload.type == models.ChatType.GROUP:
        return create_group(
            db,
            user_id=user_id,
            name=payload.name,
            description=payload.description,
            participant_ids=payload.participant_ids,
        )
    return create_direct(db, user_id=user_id, target_user_id=payload.target_user_id)


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


def update_group(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    payload: schemas.UpdateChatRequest,
) -> schemas.ChatDetail:
    session = access.load_accessible_session(db, user_id, chat_id)
    if session.type != models.ChatType.GROUP:
        raise BadRequest("Cannot update direct chat sessions")
    if not access.is_group_admin(session, user_id):
        raise Forbidden("Only admins can update group settings")

    fields = payload.model_fields_set
    if "name" in fields:
        name = (payload.name or "").strip()
        if not name:
            raise BadRequest("Group name cannot be empty")
        session.name = name
    if "description" in fields:
        session.description = payload.description
    if "avatar_url" in fields:
        session.avatar_url = payload.avatar_url
    db.commit()
    return _detail(db, session, user_id)


def leave_or_delete(db: Session, *, user_id: str, chat_id: str) -> LeaveResult:
    session = access.load_accessible_session(db, user_id, chat_id)
    now = utcnow()

    if session.type == models.ChatType.DIRECT:
        session.is_active = False
        db.commit()
        logger.info("Direct chat closed", extra={"chat_id": session.id, "user_id": user_id})
        return LeaveResult(
            chat_id=session.id,
            user_id=user_id,
            ended=True,
            departed=tuple(member_ids(session)),
        )

    participant = access.active_participant(session, user_id)
    participant.is_active = False
    participant.left_at = now

    promoted: Optional[str] = None
    remaining = [p for p in session.participants if p.is_active]
    if not remaining:
        session.is_active = False
    elif not any(p.role == models.ParticipantRole.ADMIN for p in remaining):
        successor = min(remaining, key=lambda p: (as_utc(p.joined_at), p.id))
        successor.role = models.ParticipantRole.ADMIN
        promoted = successor.user_id
    db.commit()

    logger.info(
        "Participant left group",
        extra={"chat_id": session.id, "user_id": user_id, "ended": not session.is_active},
    )
    return LeaveResult(
        chat_id=session.id,
        user_id=user_id,
        ended=not session.is_active,
        promoted_user_id=promoted,
        departed=(user_id,),
    )
