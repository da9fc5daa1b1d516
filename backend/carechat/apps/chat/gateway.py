"""
Realtime chat gateway.

Frames are `{"event": str, "data": object}`, either JSON text or msgpack
binary; a connection is answered in the encoding it last sent. Handlers for
one connection run in arrival order. Database work runs in worker threads
with a fresh session per handler, and every handler re-checks access because
room membership is only a fan-out list.
"""

from __future__ import annotations

import json
import logging
import os
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import msgpack
from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from carechat import security
from carechat.apps.accounts import directory
from carechat.database import WriteSessionLocal, run_in_session
from carechat.errors import BadRequest, ChatError, Unauthorized

from . import access, messages, presence, schemas, sessions
from .rooms import ClientConnection, Identity, RoomManager, chat_room, rooms, user_room
from .typing_indicator import TYPING_TIMEOUT_SECONDS, TypingIndicator

logger = logging.getLogger(__name__)

try:
    MAX_PAYLOAD_BYTES = int(os.getenv("REALTIME_PAYLOAD_MAX_BYTES", "8192"))
except ValueError:
    MAX_PAYLOAD_BYTES = 8192

AUTH_FAILED_REASON = "Authentication failed"
GENERIC_ERROR = "Something went wrong"

Handler = Callable[[ClientConnection, dict], Awaitable[None]]


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------


def decode_frame(raw: str | bytes) -> schemas.GatewayFrame:
    size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
    if size > MAX_PAYLOAD_BYTES:
        raise BadRequest("Payload exceeds realtime limit")
    try:
        if isinstance(raw, bytes):
            data = msgpack.unpackb(raw, raw=False, strict_map_key=False)
        else:
            data = json.loads(raw)
        return schemas.GatewayFrame.model_validate(data)
    except (ValueError, TypeError, msgpack.UnpackException):
        raise BadRequest("Malformed frame")


def encode_frame(event: str, data: Any, *, binary: bool = False) -> str | bytes:
    frame = {"event": event, "data": data}
    if binary:
        return msgpack.packb(frame, use_bin_type=True)
    return json.dumps(frame, separators=(",", ":"))


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid payload"
    first = errors[0]
    where = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid payload: {where} {first.get('msg', '')}".strip()


class WebSocketConnection(ClientConnection):
    def __init__(self, websocket: WebSocket, identity: Identity) -> None:
        super().__init__(identity)
        self.websocket = websocket
        self.binary = False

    async def send(self, event: str, data: Any) -> None:
        frame = encode_frame(event, data, binary=self.binary)
        if isinstance(frame, bytes):
            await self.websocket.send_bytes(frame)
        else:
            await self.websocket.send_text(frame)


def extract_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Thread-side helpers (run inside run_in_session)
# ---------------------------------------------------------------------------


def _check_access(db: Session, user_id: str, chat_id: str) -> str:
    return access.load_accessible_session(db, user_id, chat_id).id


def _create_chat(
    db: Session,
    user_id: str,
    payload: schemas.CreateChatRequest,
) -> tuple[schemas.ChatCreated, list[str], Optional[schemas.UserProfile]]:
    created = sessions.create_chat(db, user_id=user_id, payload=payload)
    session = access.get_session_or_404(db, created.chat_id)
    creator = schemas.profile_of(directory.get_user(db, user_id))
    return created, sessions.member_ids(session), creator


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ChatGateway:
    def __init__(
        self,
        rooms: RoomManager,
        session_factory,
        *,
        tracker: Optional[presence.PresenceTracker] = None,
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self.rooms = rooms
        self.session_factory = session_factory
        self.presence = tracker or presence.PresenceTracker(rooms, session_factory)
        self.typing_timeout = typing_timeout
        self._handlers: dict[str, Handler] = {
            "join_chat": self.on_join_chat,
            "leave_chat": self.on_leave_chat,
            "send_message": self.on_send_message,
            "edit_message": self.on_edit_message,
            "delete_message": self.on_delete_message,
            "mark_as_read": self.on_mark_as_read,
            "create_chat": self.on_create_chat,
            "typing_start": self.on_typing_start,
            "typing_stop": self.on_typing_stop,
            "typing_indicator": self.on_typing_indicator,
            "user_online": self.on_user_online,
            "user_offline": self.on_user_offline,
            "presence_update": self.on_presence_update,
            "get_online_users": self.on_get_online_users,
        }

    async def _db(self, fn, /, *args, **kwargs):
        return await run_in_session(self.session_factory, fn, *args, **kwargs)

    # -- lifecycle ----------------------------------------------------------

    async def authenticate(self, token: Optional[str]) -> Identity:
        user = await self._db(security.get_user_from_token, token)
        return Identity.from_user(user)

    async def open(self, conn: ClientConnection) -> None:
        conn.typing = TypingIndicator(
            partial(self._typing_broadcast, conn),
            user_id=conn.user_id,
            username=conn.username,
            avatar_url=conn.identity.avatar_url,
            timeout=self.typing_timeout,
        )
        self.rooms.join(conn, user_room(conn.user_id))
        chat_ids = await self.presence.connect(conn)
        for chat_id in chat_ids:
            self.rooms.join(conn, chat_room(chat_id))
        logger.info(
            "Realtime connection opened",
            extra={"connection_id": conn.id, "user_id": conn.user_id, "chats": len(chat_ids)},
        )

    async def close(self, conn: ClientConnection) -> None:
        if conn.typing is not None:
            conn.typing.clear()
        self.rooms.leave_all(conn)
        try:
            await self.presence.disconnect(conn)
        except Exception:
            logger.exception("Presence update on disconnect failed", extra={"user_id": conn.user_id})
        logger.info("Realtime connection closed", extra={"connection_id": conn.id, "user_id": conn.user_id})

    async def dispatch(self, conn: ClientConnection, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("error", {"message": f"Unknown event: {event}"})
            return
        try:
            await handler(conn, data if isinstance(data, dict) else {})
        except ChatError as exc:
            logger.debug(
                "Realtime handler rejected event",
                extra={"event": event, "user_id": conn.user_id, "status": exc.status_code},
            )
            await conn.send("error", {"message": exc.message})
        except ValidationError as exc:
            await conn.send("error", {"message": _validation_message(exc)})
        except Exception:
            logger.exception("Realtime handler failed", extra={"event": event, "user_id": conn.user_id})
            await conn.send("error", {"message": GENERIC_ERROR})

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            identity = await self.authenticate(extract_token(websocket))
        except Unauthorized:
            logger.warning("Realtime authentication failed", extra={"client": str(websocket.client)})
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=AUTH_FAILED_REASON)
            return

        conn = WebSocketConnection(websocket, identity)
        try:
            await self.open(conn)
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("bytes") if message.get("text") is None else message["text"]
                if raw is None:
                    continue
                conn.binary = isinstance(raw, bytes)
                try:
                    frame = decode_frame(raw)
                except ChatError as exc:
                    await conn.send("error", {"message": exc.message})
                    continue
                await self.dispatch(conn, frame.event, frame.data)
        except WebSocketDisconnect:
            pass
        finally:
            await self.close(conn)

    # -- chats --------------------------------------------------------------

    async def on_join_chat(self, conn: ClientConnection, data: dict) -> None:
        ref = schemas.ChatRef.model_validate(data)
        chat_id = await self._db(_check_access, conn.user_id, ref.chat_id)
        room = chat_room(chat_id)
        self.rooms.join(conn, room)
        await conn.send("chat_joined", {"chatId": chat_id})
        await self.rooms.emit(
            room,
            "user_joined_chat",
            {"userId": conn.user_id, "username": conn.username, "chatId": chat_id},
            exclude=conn,
        )

    async def on_leave_chat(self, conn: ClientConnection, data: dict) -> None:
        # Leaving a room needs no permission: a user who lost access must
        # still be able to stop receiving its events.
        ref = schemas.ChatRef.model_validate(data)
        room = chat_room(ref.chat_id)
        was_member = room in conn.rooms
        self.rooms.leave(conn, room)
        if conn.typing is not None and conn.typing.is_typing(ref.chat_id):
            await conn.typing.stop(ref.chat_id)
        await conn.send("chat_left", {"chatId": ref.chat_id})
        if was_member:
            await self.rooms.emit(
                room,
                "user_left_chat",
                {"userId": conn.user_id, "username": conn.username, "chatId": ref.chat_id},
            )

    async def on_create_chat(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.CreateChatRequest.model_validate(data)
        created, members, creator = await self._db(_create_chat, conn.user_id, payload)
        announce = not created.is_existing or created.reactivated

        for user_id in members:
            if user_id == conn.user_id or announce:
                self.rooms.join_user_to_chat(user_id, created.chat_id)
        self.rooms.join(conn, chat_room(created.chat_id))
        await conn.send("chat_created", created.wire())

        if not announce:
            return
        notice = created.wire()
        if created.type == schemas.ChatType.DIRECT:
            notice["participant"] = creator.wire() if creator is not None else None
        for user_id in members:
            if user_id != conn.user_id:
                await self.rooms.emit(user_room(user_id), "chat_created", notice)

    # -- messages -----------------------------------------------------------

    async def on_send_message(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.SendMessagePayload.model_validate(data)
        message = await self._db(messages.send, user_id=conn.user_id, chat_id=payload.chat_id, payload=payload)
        wire = message.wire()
        await self.rooms.emit(chat_room(message.chat_id), "message_received", wire)
        await conn.send(
            "message_sent",
            {"tempId": payload.temp_id, "messageId": message.id, "deliveredAt": wire["deliveredAt"]},
        )

    async def on_edit_message(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.EditMessagePayload.model_validate(data)
        message = await self._db(
            messages.edit,
            user_id=conn.user_id,
            message_id=payload.message_id,
            content=payload.new_content,
        )
        wire = message.wire()
        await self.rooms.emit(
            chat_room(message.chat_id),
            "message_edited",
            {
                "id": message.id,
                "chatId": message.chat_id,
                "content": message.content,
                "isEdited": message.is_edited,
                "editedAt": wire["editedAt"],
            },
        )

    async def on_delete_message(self, conn: ClientConnection, data: dict) -> None:
        ref = schemas.MessageRef.model_validate(data)
        deleted = await self._db(messages.delete, user_id=conn.user_id, message_id=ref.message_id)
        await self.rooms.emit(
            chat_room(deleted.chat_id),
            "message_deleted",
            {"messageId": deleted.message_id, "chatId": deleted.chat_id, "deletedBy": conn.user_id},
        )

    async def on_mark_as_read(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.MarkReadPayload.model_validate(data)
        result = await self._db(
            messages.mark_read,
            user_id=conn.user_id,
            chat_id=payload.chat_id,
            message_ids=payload.message_ids,
        )
        await self.rooms.emit(
            chat_room(result.chat_id),
            "messages_read",
            {
                "chatId": result.chat_id,
                "messageIds": result.message_ids,
                "readBy": {"id": conn.user_id, "username": conn.username},
                "readAt": result.wire()["readAt"],
            },
        )

    # -- typing -------------------------------------------------------------

    async def _typing_broadcast(self, conn: ClientConnection, chat_id: str, event: str, data: dict) -> None:
        await self.rooms.emit(chat_room(chat_id), event, data, exclude=conn)

    async def _typing(self, conn: ClientConnection, chat_id: str, is_typing: bool) -> None:
        chat_id = await self._db(_check_access, conn.user_id, chat_id)
        if is_typing:
            await conn.typing.start(chat_id)
        else:
            await conn.typing.stop(chat_id)

    async def on_typing_start(self, conn: ClientConnection, data: dict) -> None:
        ref = schemas.ChatRef.model_validate(data)
        await self._typing(conn, ref.chat_id, True)

    async def on_typing_stop(self, conn: ClientConnection, data: dict) -> None:
        ref = schemas.ChatRef.model_validate(data)
        await self._typing(conn, ref.chat_id, False)

    async def on_typing_indicator(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.TypingIndicatorPayload.model_validate(data)
        await self._typing(conn, payload.chat_id, payload.is_typing)

    # -- presence -----------------------------------------------------------

    async def on_user_online(self, conn: ClientConnection, data: dict) -> None:
        await self.presence.go_online(conn)

    async def on_user_offline(self, conn: ClientConnection, data: dict) -> None:
        await self.presence.go_offline(conn)

    async def on_presence_update(self, conn: ClientConnection, data: dict) -> None:
        payload = schemas.PresenceUpdatePayload.model_validate(data)
        await self.presence.set_status(conn, payload.status)

    async def on_get_online_users(self, conn: ClientConnection, data: dict) -> None:
        ref = schemas.ChatRef.model_validate(data)
        result = await self._db(presence.online_users_in_chat, user_id=conn.user_id, chat_id=ref.chat_id)
        await conn.send("online_users", result.wire())


gateway = ChatGateway(rooms, WriteSessionLocal)
