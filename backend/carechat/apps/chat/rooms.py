"""
In-process broadcast rooms.

A room is a set of live connections: `chat_<id>` for every chat session and
`user_<id>` for each identity's devices. Rooms only decide who receives an
event; every handler still checks access against the database.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from carechat.utils.identifiers import generate_uuid7

logger = logging.getLogger(__name__)


def chat_room(chat_id: str) -> str:
    return f"chat_{chat_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


@dataclass(frozen=True)
class Identity:
    """Snapshot of the authenticated user taken when the connection opened."""

    id: str
    username: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> "Identity":
        return cls(
            id=str(user.id),
            username=user.username,
            avatar_url=None if user.is_anonymous else user.avatar_url,
        )


class ClientConnection:
    """One live client. Transports subclass this and implement `send`."""

    def __init__(self, identity: Identity, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or generate_uuid7()
        self.identity = identity
        self.rooms: set[str] = set()
        self.typing = None

    @property
    def user_id(self) -> str:
        return self.identity.id

    @property
    def username(self) -> str:
        return self.identity.username

    async def send(self, event: str, data: Any) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} user={self.user_id}>"


class RoomManager:
    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, ClientConnection]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- membership ---------------------------------------------------------

    def join(self, conn: ClientConnection, room: str) -> None:
        self._rooms.setdefault(room, {})[conn.id] = conn
        conn.rooms.add(room)

    def leave(self, conn: ClientConnection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.pop(conn.id, None)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    def leave_all(self, conn: ClientConnection) -> list[str]:
        rooms = sorted(conn.rooms)
        for room in rooms:
            self.leave(conn, room)
        return rooms

    def members(self, room: str) -> list[ClientConnection]:
        return list(self._rooms.get(room, {}).values())

    def connections_for_user(self, user_id: str) -> list[ClientConnection]:
        return self.members(user_room(user_id))

    def join_user_to_chat(self, user_id: str, chat_id: str) -> int:
        """Join every live connection of `user_id` to the chat room."""
        conns = self.connections_for_user(user_id)
        for conn in conns:
            self.join(conn, chat_room(chat_id))
        return len(conns)

    def remove_user_from_chat(self, user_id: str, chat_id: str) -> int:
        """Drop every live connection of `user_id` from the chat room."""
        room = chat_room(chat_id)
        conns = [conn for conn in self.connections_for_user(user_id) if room in conn.rooms]
        for conn in conns:
            self.leave(conn, room)
        return len(conns)

    # -- fan-out ------------------------------------------------------------

    async def _deliver(self, targets: list[ClientConnection], event: str, data: Any) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(conn.send(event, data) for conn in targets),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Realtime send failed",
                    extra={"connection_id": conn.id, "event": event, "error": repr(result)},
                )
            else:
                delivered += 1
        return delivered

    async def emit(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[ClientConnection] = None,
    ) -> int:
        targets = [conn for conn in self.members(room) if conn is not exclude]
        return await self._deliver(targets, event, data)

    async def emit_many(
        self,
        rooms: Iterable[str],
        event: str,
        data: Any,
        exclude: Optional[ClientConnection] = None,
    ) -> int:
        """Send once per connection even when it sits in several of `rooms`."""
        targets: dict[str, ClientConnection] = {}
        for room in rooms:
            for conn in self.members(room):
                if conn is not exclude:
                    targets.setdefault(conn.id, conn)
        return await self._deliver(list(targets.values()), event, data)

    async def announce_departure(self, chat_id: str, event: str, data: Any, user_ids: Iterable[str]) -> int:
        """Emit to the chat room, then remove `user_ids` from it. The departing users still get this notice."""
        delivered = await self.emit(chat_room(chat_id), event, data)
        for user_id in user_ids:
            self.remove_user_from_chat(user_id, chat_id)
        return delivered

    # -- worker threads -----------------------------------------------------

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    def emit_threadsafe(self, room: str, event: str, data: Any) -> bool:
        """Schedule `emit` from a worker thread; returns False when no loop is bound."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        asyncio.run_coroutine_threadsafe(self.emit(room, event, data), loop)
        return True

    def call_threadsafe(self, callback, *args) -> bool:
        """Run `callback` on the loop thread. Coroutine functions are scheduled as tasks."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        if inspect.iscoroutinefunction(callback):
            asyncio.run_coroutine_threadsafe(callback(*args), loop)
        else:
            loop.call_soon_threadsafe(callback, *args)
        return True


rooms = RoomManager()
