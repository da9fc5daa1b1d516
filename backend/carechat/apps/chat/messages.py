"""
Message store and delivery tracking.

Every operation re-checks chat access before touching rows. Functions return
wire schemas built while the session is still open, so callers running on
the event loop never trigger lazy loads on detached rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.attributes import set_committed_value

from carechat.errors import BadRequest, Forbidden, NotFound
from carechat.utils.identifiers import as_utc, utcnow

from . import access, models, schemas

logger = logging.getLogger(__name__)

EDIT_WINDOW = timedelta(minutes=15)
DEFAULT_PAGE_SIZE = 50
DEFAULT_SEARCH_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class TextBody:
    content: str


@dataclass(frozen=True)
class MediaBody:
    url: str
    media_type: Optional[str] = None
    size: Optional[int] = None
    caption: Optional[str] = None


MessageBody = Union[TextBody, MediaBody]


def message_body(payload: schemas.SendMessageRequest) -> tuple[models.MessageType, MessageBody]:
    """Pick the message variant from a send request."""
    content = (payload.content or "").strip()
    url = (payload.media_url or "").strip()
    if url:
        kind = payload.type if payload.type != models.MessageType.TEXT else models.MessageType.MEDIA
        body = MediaBody(
            url=url,
            media_type=payload.media_type,
            size=payload.media_size,
            caption=content or None,
        )
        return kind, body
    if not content:
        raise BadRequest("Message content or media required")
    if payload.type != models.MessageType.TEXT:
        raise BadRequest("mediaURL is required for media messages")
    return models.MessageType.TEXT, TextBody(content=content)


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def page_bounds(page: int, limit: int, default: int = DEFAULT_PAGE_SIZE) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = int(limit or default)
    return page, max(1, min(limit, MAX_PAGE_SIZE))


def serialize_message(message: models.ChatMessage) -> schemas.MessageRead:
    reply = message.reply_to
    return schemas.MessageRead(
        id=message.id,
        chat_id=message.chat_id,
        sender_id=message.sender_id,
        sender=schemas.profile_of(message.sender),
        type=message.type,
        content=message.content,
        media_url=message.media_url,
        media_type=message.media_type,
        media_size=message.media_size,
        reply_to_id=message.reply_to_id,
        reply_to=(
            schemas.ReplyPreview(
                id=reply.id,
                type=reply.type,
                content=reply.content,
                sender=schemas.profile_of(reply.sender),
            )
            if reply is not None
            else None
        ),
        created_at=as_utc(message.created_at),
        is_edited=bool(message.is_edited),
        edited_at=as_utc(message.edited_at),
        delivered_at=as_utc(message.delivered_at),
        read_by=[
            schemas.ReadReceipt(user_id=read.user_id, read_at=as_utc(read.read_at))
            for read in message.reads
        ],
    )


def _get_message_or_404(db: Session, message_id: str) -> models.ChatMessage:
    message = db.get(models.ChatMessage, str(message_id)) if message_id else None
    if message is None:
        raise NotFound("Message not found")
    return message


def _not_own(user_id: str):
    return or_(models.ChatMessage.sender_id != user_id, models.ChatMessage.sender_id.is_(None))


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def mark_delivered(db: Session, user_id: str, messages: Sequence[models.ChatMessage]) -> list[str]:
    """Stamp deliveredAt on fetched messages from other senders; returns the ids stamped."""
    pending = [m for m in messages if m.delivered_at is None and m.sender_id != user_id]
    if not pending:
        return []
    now = utcnow()
    ids = [m.id for m in pending]
    (
        db.query(models.ChatMessage)
        .filter(models.ChatMessage.id.in_(ids), models.ChatMessage.delivered_at.is_(None))
        .update({models.ChatMessage.delivered_at: now}, synchronize_session=False)
    )
    db.commit()
    for message in pending:
        set_committed_value(message, "delivered_at", now)
    return ids


def list_messages(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    before: Optional[datetime] = None,
    after: Optional[datetime] = None,
) -> schemas.MessageList:
    session = access.load_accessible_session(db, user_id, chat_id)
    page, limit = page_bounds(page, limit)

    query = db.query(models.ChatMessage).filter(models.ChatMessage.chat_id == session.id)
    if before is not None:
        query = query.filter(models.ChatMessage.created_at < as_utc(before))
    if after is not None:
        query = query.filter(models.ChatMessage.created_at > as_utc(after))

    total = query.count()
    rows = (
        query.options(selectinload(models.ChatMessage.reads))
        .order_by(models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    mark_delivered(db, user_id, rows)
    rows.reverse()

    return schemas.MessageList(
        messages=[serialize_message(row) for row in rows],
        pagination=schemas.Pagination.build(total=total, page=page, limit=limit),
    )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def send(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    payload: schemas.SendMessageRequest,
) -> schemas.MessageRead:
    session = access.load_accessible_session(db, user_id, chat_id)
    kind, body = message_body(payload)

    if payload.reply_to_id:
        target = db.get(models.ChatMessage, str(payload.reply_to_id))
        if target is None or target.chat_id != session.id:
            raise BadRequest("Reply-to message not found in this chat")

    now = utcnow()
    message = models.ChatMessage(
        chat_id=session.id,
        sender_id=user_id,
        type=kind,
        reply_to_id=payload.reply_to_id or None,
        created_at=now,
        delivered_at=now,
    )
    if isinstance(body, TextBody):
        message.content = body.content
    else:
        message.content = body.caption
        message.media_url = body.url
        message.media_type = body.media_type
        message.media_size = body.size

    session.last_activity = now
    db.add(message)
    db.commit()
    logger.debug("Message stored", extra={"chat_id": session.id, "message_id": message.id})
    return serialize_message(message)


def edit(db: Session, *, user_id: str, message_id: str, content: Optional[str]) -> schemas.MessageRead:
    text = (content or "").strip()
    if not text:
        raise BadRequest("Message content is required")

    message = _get_message_or_404(db, message_id)
    access.load_accessible_session(db, user_id, message.chat_id)
    if message.sender_id != user_id:
        raise Forbidden("Can only edit your own messages")
    if message.type != models.MessageType.TEXT:
        raise BadRequest("Can only edit text messages")

    now = utcnow()
    if now - as_utc(message.created_at) > EDIT_WINDOW:
        raise BadRequest("Message too old to edit")

    message.content = text
    message.is_edited = True
    message.edited_at = now
    db.commit()
    return serialize_message(message)


def delete(db: Session, *, user_id: str, message_id: str) -> schemas.DeletedMessage:
    message = _get_message_or_404(db, message_id)
    session = access.load_accessible_session(db, user_id, message.chat_id)
    if message.sender_id != user_id and not access.is_group_admin(session, user_id):
        raise Forbidden("Cannot delete this message")

    deleted = schemas.DeletedMessage(message_id=message.id, chat_id=message.chat_id)
    # Replies keep their own content; only the reference goes.
    (
        db.query(models.ChatMessage)
        .filter(models.ChatMessage.reply_to_id == message.id)
        .update({models.ChatMessage.reply_to_id: None}, synchronize_session=False)
    )
    db.delete(message)
    db.commit()
    logger.info(
        "Message deleted",
        extra={"chat_id": deleted.chat_id, "message_id": deleted.message_id, "deleted_by": user_id},
    )
    return deleted


def _upsert_reads(db: Session, user_id: str, message_ids: list[str], now: datetime) -> None:
    existing = {
        row.message_id: row
        for row in db.query(models.MessageRead)
        .filter(models.MessageRead.user_id == user_id, models.MessageRead.message_id.in_(message_ids))
        .all()
    }
    for message_id in message_ids:
        row = existing.get(message_id)
        if row is None:
            db.add(models.MessageRead(message_id=message_id, user_id=user_id, read_at=now))
        elif as_utc(row.read_at) < now:
            row.read_at = now


def mark_read(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    message_ids: Iterable[str],
) -> schemas.ReadResult:
    session = access.load_accessible_session(db, user_id, chat_id)
    ids = list(dict.fromkeys(str(message_id) for message_id in message_ids if message_id))
    if not ids:
        raise BadRequest("messageIds must be a non-empty list")

    found = (
        db.query(func.count(models.ChatMessage.id))
        .filter(models.ChatMessage.id.in_(ids), models.ChatMessage.chat_id == session.id)
        .scalar()
        or 0
    )
    if found != len(ids):
        raise BadRequest("Some messages do not belong to this chat")

    # A concurrent mark-read of the same message can win the insert; the
    # second pass then sees its row and only moves read_at forward.
    for attempt in range(2):
        now = utcnow()
        try:
            _upsert_reads(db, user_id, ids, now)
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.debug("Read receipt insert raced; retrying", extra={"chat_id": session.id})

    return schemas.ReadResult(chat_id=session.id, message_ids=ids, read_by=user_id, read_at=now)


# ---------------------------------------------------------------------------
# Counters and search
# ---------------------------------------------------------------------------


def unread_counts(db: Session, user_id: str, chat_ids: Iterable[str]) -> dict[str, int]:
    ids = list(chat_ids)
    if not ids:
        return {}
    rows = (
        db.query(models.ChatMessage.chat_id, func.count(models.ChatMessage.id))
        .outerjoin(
            models.MessageRead,
            and_(
                models.MessageRead.message_id == models.ChatMessage.id,
                models.MessageRead.user_id == user_id,
            ),
        )
        .filter(
            models.ChatMessage.chat_id.in_(ids),
            _not_own(user_id),
            models.MessageRead.id.is_(None),
        )
        .group_by(models.ChatMessage.chat_id)
        .all()
    )
    counts = {chat_id: 0 for chat_id in ids}
    counts.update({chat_id: int(count) for chat_id, count in rows})
    return counts


def unread_count(db: Session, *, user_id: str, chat_id: str) -> schemas.UnreadCount:
    session = access.load_accessible_session(db, user_id, chat_id)
    return schemas.UnreadCount(
        chat_id=session.id,
        unread_count=unread_counts(db, user_id, [session.id])[session.id],
    )


def latest_message(db: Session, chat_id: str) -> Optional[models.ChatMessage]:
    return (
        db.query(models.ChatMessage)
        .filter(models.ChatMessage.chat_id == chat_id)
        .order_by(models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc())
        .first()
    )


def search(
    db: Session,
    *,
    user_id: str,
    chat_id: str,
    query: Optional[str],
    page: int = 1,
    limit: int = DEFAULT_SEARCH_PAGE_SIZE,
) -> schemas.SearchResult:
    term = (query or "").strip()
    if not term:
        raise BadRequest("Search query is required")
    session = access.load_accessible_session(db, user_id, chat_id)
    page, limit = page_bounds(page, limit, DEFAULT_SEARCH_PAGE_SIZE)

    matches = db.query(models.ChatMessage).filter(
        models.ChatMessage.chat_id == session.id,
        models.ChatMessage.content.ilike(f"%{escape_like(term)}%", escape="\\"),
    )
    total = matches.count()
    rows = (
        matches.options(selectinload(models.ChatMessage.reads))
        .order_by(models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return schemas.SearchResult(
        messages=[serialize_message(row) for row in rows],
        search_query=term,
        pagination=schemas.Pagination.build(total=total, page=page, limit=limit),
    )
