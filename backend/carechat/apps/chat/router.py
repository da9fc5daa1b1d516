from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, WebSocket, status
from sqlalchemy.orm import Session

from carechat.apps.accounts import models as account_models
from carechat.database import get_db, get_read_db
from carechat.security import get_current_active_user

from . import access, messages, presence, schemas, sessions
from .gateway import gateway
from .models import ChatType
from .rooms import RoomManager, chat_room, rooms, user_room

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


def get_rooms() -> RoomManager:
    return rooms


def _ok(data, message: str, status_code: int = status.HTTP_200_OK) -> schemas.ApiResponse:
    payload = data.wire() if hasattr(data, "wire") else data
    return schemas.ApiResponse(status_code=status_code, data=payload, message=message)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/sessions", response_model=schemas.ApiResponse)
def list_chat_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(sessions.DEFAULT_PAGE_SIZE, ge=1, le=messages.MAX_PAGE_SIZE),
    search: Optional[str] = Query(None, max_length=100),
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    result = sessions.list_sessions(db, user_id=current_user.id, page=page, limit=limit, search=search)
    return _ok(result, f"Retrieved {len(result.chat_sessions)} chat sessions")


@router.post("/sessions", response_model=schemas.ApiResponse, status_code=status.HTTP_201_CREATED)
def create_chat_session(
    payload: schemas.CreateChatRequest,
    response: Response,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    created = sessions.create_chat(db, user_id=current_user.id, payload=payload)
    if not created.is_existing or created.reactivated:
        session = access.get_session_or_404(db, created.chat_id)
        notice = created.wire()
        if created.type == ChatType.DIRECT:
            notice["participant"] = schemas.profile_of(current_user).wire()
        for user_id in sessions.member_ids(session):
            hub.call_threadsafe(hub.join_user_to_chat, user_id, created.chat_id)
            if user_id != current_user.id:
                hub.emit_threadsafe(user_room(user_id), "chat_created", notice)

    if created.is_existing:
        response.status_code = status.HTTP_200_OK
        return _ok(created, "Chat session already exists")
    label = "Direct" if created.type == ChatType.DIRECT else "Group"
    return _ok(created, f"{label} chat created successfully", status.HTTP_201_CREATED)


@router.get("/sessions/{chat_id}", response_model=schemas.ApiResponse)
def get_chat_session(
    chat_id: str,
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    detail = sessions.get_session(db, user_id=current_user.id, chat_id=chat_id)
    return _ok(detail, "Chat session retrieved successfully")


@router.put("/sessions/{chat_id}", response_model=schemas.ApiResponse)
def update_chat_session(
    chat_id: str,
    payload: schemas.UpdateChatRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    detail = sessions.update_group(db, user_id=current_user.id, chat_id=chat_id, payload=payload)
    hub.emit_threadsafe(
        chat_room(detail.id),
        "chat_updated",
        {
            "chatId": detail.id,
            "name": detail.name,
            "description": detail.description,
            "avatarURL": detail.avatar_url,
            "updatedBy": current_user.id,
        },
    )
    return _ok(detail, "Chat session updated successfully")


@router.delete("/sessions/{chat_id}", response_model=schemas.ApiResponse)
def leave_chat_session(
    chat_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    result = sessions.leave_or_delete(db, user_id=current_user.id, chat_id=chat_id)
    hub.call_threadsafe(
        hub.announce_departure,
        result.chat_id,
        "participant_left",
        {**result.wire(), "username": current_user.username},
        list(result.departed),
    )
    return _ok(result.wire(), "Chat session closed" if result.ended else "Left chat successfully")


@router.get("/sessions/{chat_id}/online", response_model=schemas.ApiResponse)
def get_online_users(
    chat_id: str,
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    result = presence.online_users_in_chat(db, user_id=current_user.id, chat_id=chat_id)
    return _ok(result, f"{result.count} users online")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.get("/sessions/{chat_id}/messages", response_model=schemas.ApiResponse)
def list_chat_messages(
    chat_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(messages.DEFAULT_PAGE_SIZE, ge=1, le=messages.MAX_PAGE_SIZE),
    before: Optional[datetime] = Query(None),
    after: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    result = messages.list_messages(
        db,
        user_id=current_user.id,
        chat_id=chat_id,
        page=page,
        limit=limit,
        before=before,
        after=after,
    )
    return _ok(result, f"Retrieved {len(result.messages)} messages")


@router.post("/sessions/{chat_id}/messages", response_model=schemas.ApiResponse, status_code=status.HTTP_201_CREATED)
def send_chat_message(
    chat_id: str,
    payload: schemas.SendMessageRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    message = messages.send(db, user_id=current_user.id, chat_id=chat_id, payload=payload)
    hub.emit_threadsafe(chat_room(message.chat_id), "message_received", message.wire())
    return _ok(message, "Message sent successfully", status.HTTP_201_CREATED)


@router.post("/sessions/{chat_id}/read", response_model=schemas.ApiResponse)
def mark_messages_read(
    chat_id: str,
    payload: schemas.MarkReadRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    result = messages.mark_read(db, user_id=current_user.id, chat_id=chat_id, message_ids=payload.message_ids)
    wire = result.wire()
    hub.emit_threadsafe(
        chat_room(result.chat_id),
        "messages_read",
        {
            "chatId": result.chat_id,
            "messageIds": result.message_ids,
            "readBy": {"id": current_user.id, "username": current_user.username},
            "readAt": wire["readAt"],
        },
    )
    return _ok(wire, f"Marked {len(result.message_ids)} messages as read")


@router.get("/sessions/{chat_id}/unread", response_model=schemas.ApiResponse)
def get_unread_count(
    chat_id: str,
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    result = messages.unread_count(db, user_id=current_user.id, chat_id=chat_id)
    return _ok(result, "Unread count retrieved successfully")


@router.get("/sessions/{chat_id}/search", response_model=schemas.ApiResponse)
def search_chat_messages(
    chat_id: str,
    q: str = Query("", max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(messages.DEFAULT_SEARCH_PAGE_SIZE, ge=1, le=messages.MAX_PAGE_SIZE),
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
) -> schemas.ApiResponse:
    result = messages.search(db, user_id=current_user.id, chat_id=chat_id, query=q, page=page, limit=limit)
    return _ok(result, f'Found {len(result.messages)} messages matching "{result.search_query}"')


@router.put("/messages/{message_id}", response_model=schemas.ApiResponse)
def edit_chat_message(
    message_id: str,
    payload: schemas.EditMessageRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    message = messages.edit(db, user_id=current_user.id, message_id=message_id, content=payload.content)
    wire = message.wire()
    hub.emit_threadsafe(
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
    return _ok(wire, "Message edited successfully")


@router.delete("/messages/{message_id}", response_model=schemas.ApiResponse)
def delete_chat_message(
    message_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
    hub: RoomManager = Depends(get_rooms),
) -> schemas.ApiResponse:
    deleted = messages.delete(db, user_id=current_user.id, message_id=message_id)
    hub.emit_threadsafe(
        chat_room(deleted.chat_id),
        "message_deleted",
        {"messageId": deleted.message_id, "chatId": deleted.chat_id, "deletedBy": current_user.id},
    )
    return _ok(deleted, "Message deleted successfully")


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    await gateway.serve(websocket)
