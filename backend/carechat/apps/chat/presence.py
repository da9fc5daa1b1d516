"""
Presence tracking.

Online means "at least one live connection". The in-memory registry counts
connections per user; the `user_presence` row is the durable view other
processes and the HTTP API read. Its `connection_id` always names one of
the live connections, or is NULL when the user is offline.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carechat.apps.accounts import directory
from carechat.database import run_in_session
from carechat.utils.identifiers import as_utc, utcnow

from . import access, models, schemas, sessions
from .rooms import ClientConnection, RoomManager, chat_room

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """user id -> set of live connection ids. Owned by the event loop thread."""

    def __init__(self) -> None:
        self._connections: dict[str, set[str]] = {}

    def attach(self, user_id: str, connection_id: str) -> bool:
        """Register a connection; True when it is the user's first."""
        conns = self._connections.setdefault(user_id, set())
        first = not conns
        conns.add(connection_id)
        return first

    def detach(self, user_id: str, connection_id: str) -> int:
        """Forget a connection; returns how many remain for the user."""
        conns = self._connections.get(user_id)
        if not conns:
            return 0
        conns.discard(connection_id)
        if not conns:
            del self._connections[user_id]
            return 0
        return len(conns)

    def connections(self, user_id: str) -> set[str]:
        return set(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def online_user_ids(self) -> list[str]:
        return sorted(self._connections)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def get_presence(db: Session, user_id: str) -> Optional[models.UserPresence]:
    return db.query(models.UserPresence).filter(models.UserPresence.user_id == user_id).first()


def upsert_presence(
    db: Session,
    user_id: str,
    *,
    is_online: bool,
    connection_id: Optional[str] = None,
) -> models.UserPresence:
    """Create-if-absent else update. Safe to repeat."""
    for attempt in range(2):
        now = utcnow()
        row = get_presence(db, user_id)
        if row is None:
            row = models.UserPresence(user_id=user_id)
            db.add(row)
        row.is_online = is_online
        row.connection_id = connection_id if is_online else None
        row.last_seen = now
        row.updated_at = now
        try:
            db.commit()
            return row
        except IntegrityError:
            # Two first connections raced on the unique user_id.
            db.rollback()
            if attempt:
                raise
    return row


def online_users_in_chat(db: Session, *, user_id: str, chat_id: str) -> schemas.OnlineUsers:
    session = access.load_accessible_session(db, user_id, chat_id)
    members = sessions.member_ids(session)
    online = {
        row.user_id
        for row in db.query(models.UserPresence)
        .filter(models.UserPresence.user_id.in_(members), models.UserPresence.is_online.is_(True))
        .all()
    }
    users = directory.get_users(db, online)
    profiles = [schemas.profile_of(users[uid]) for uid in members if uid in online and uid in users]
    return schemas.OnlineUsers(chat_id=session.id, online_users=profiles, count=len(profiles))


@dataclass(frozen=True)
class PresenceChange:
    user_id: str
    is_online: bool
    last_seen: datetime
    chat_ids: list[str]
    changed: bool = True


def _apply(db: Session, user_id: str, is_online: bool, connection_id: Optional[str]) -> PresenceChange:
    previous = get_presence(db, user_id)
    was_online = bool(previous and previous.is_online)
    row = upsert_presence(db, user_id, is_online=is_online, connection_id=connection_id)
    return PresenceChange(
        user_id=user_id,
        is_online=row.is_online,
        last_seen=as_utc(row.last_seen),
        chat_ids=sessions.chat_ids_for_user(db, user_id),
        changed=was_online != is_online,
    )


def _attach(db: Session, user_id: str, connection_id: str, first: bool) -> PresenceChange:
    """A further device only writes when the stored row reads offline."""
    if not first:
        row = get_presence(db, user_id)
        if row is not None and row.is_online:
            return PresenceChange(
                user_id=user_id,
                is_online=True,
                last_seen=as_utc(row.last_seen),
                chat_ids=sessions.chat_ids_for_user(db, user_id),
                changed=False,
            )
    return _apply(db, user_id, True, connection_id)


def _handover(db: Session, user_id: str, closing_id: str, survivor_id: str) -> None:
    row = get_presence(db, user_id)
    if row is not None and row.is_online and row.connection_id in (None, closing_id):
        row.connection_id = survivor_id
        row.updated_at = utcnow()
        db.commit()


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class PresenceTracker:
    """
    Connection lifecycle to stored presence.

    Every transition for one user holds that user's lock across the registry
    change, the database write and the announcement, so writes land in the
    order the registry saw them.
    """

    def __init__(self, rooms: RoomManager, session_factory, registry: Optional[ConnectionRegistry] = None) -> None:
        self.rooms = rooms
        self.session_factory = session_factory
        self.registry = registry or ConnectionRegistry()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _notify(self, conn: ClientConnection, change: PresenceChange, event: str, extra: dict) -> None:
        targets = [chat_room(chat_id) for chat_id in change.chat_ids]
        if change.changed:
            await self.rooms.emit_many(
                targets,
                "presence_changed",
                {"userId": change.user_id, "isOnline": change.is_online, "lastSeen": change.last_seen.isoformat()},
                exclude=conn,
            )
        await self.rooms.emit_many(
            targets,
            event,
            {"userId": change.user_id, "username": conn.username, **extra},
            exclude=conn,
        )

    async def connect(self, conn: ClientConnection) -> list[str]:
        """Attach a connection and make sure the user reads online; returns the user's chat ids."""
        async with self._lock(conn.user_id):
            first = self.registry.attach(conn.user_id, conn.id)
            change = await run_in_session(self.session_factory, _attach, conn.user_id, conn.id, first)
            if first or change.changed:
                await self._announce_online(conn, change)
            return change.chat_ids

    async def disconnect(self, conn: ClientConnection) -> None:
        async with self._lock(conn.user_id):
            remaining = self.registry.detach(conn.user_id, conn.id)
            if remaining:
                survivor = sorted(self.registry.connections(conn.user_id))[0]
                await run_in_session(self.session_factory, _handover, conn.user_id, conn.id, survivor)
                return
            change = await run_in_session(self.session_factory, _apply, conn.user_id, False, None)
            if change.changed:
                await self._announce_offline(conn, change)

    async def go_online(self, conn: ClientConnection) -> None:
        async with self._lock(conn.user_id):
            self.registry.attach(conn.user_id, conn.id)
            change = await run_in_session(self.session_factory, _apply, conn.user_id, True, conn.id)
            await self._announce_online(conn, change)

    async def go_offline(self, conn: ClientConnection) -> None:
        """Explicit offline signal: stored offline even though the socket stays open."""
        async with self._lock(conn.user_id):
            change = await run_in_session(self.session_factory, _apply, conn.user_id, False, None)
            await self._announce_offline(conn, change)

    async def set_status(self, conn: ClientConnection, status: schemas.PresenceStatus) -> None:
        is_online = status != schemas.PresenceStatus.OFFLINE
        async with self._lock(conn.user_id):
            change = await run_in_session(
                self.session_factory,
                _apply,
                conn.user_id,
                is_online,
                conn.id if is_online else None,
            )
            targets = [chat_room(chat_id) for chat_id in change.chat_ids]
            if change.changed:
                await self.rooms.emit_many(
                    targets,
                    "presence_changed",
                    {"userId": change.user_id, "isOnline": change.is_online, "lastSeen": change.last_seen.isoformat()},
                    exclude=conn,
                )
            await self.rooms.emit_many(
                targets,
                "presence_update",
                {
                    "userId": change.user_id,
                    "username": conn.username,
                    "status": status.value,
                    "lastSeen": change.last_seen.isoformat(),
                },
                exclude=conn,
            )

    async def _announce_online(self, conn: ClientConnection, change: PresenceChange) -> None:
        logger.info("User online", extra={"user_id": conn.user_id, "connection_id": conn.id})
        await self._notify(
            conn,
            change,
            "user_online",
            {"avatarURL": conn.identity.avatar_url, "timestamp": change.last_seen.isoformat()},
        )

    async def _announce_offline(self, conn: ClientConnection, change: PresenceChange) -> None:
        logger.info("User offline", extra={"user_id": conn.user_id, "connection_id": conn.id})
        await self._notify(conn, change, "user_offline", {"lastSeen": change.last_seen.isoformat()})
