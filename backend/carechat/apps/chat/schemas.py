from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from carechat.apps.accounts import directory

from .models import ChatType, MessageType, ParticipantRole

T = TypeVar("T")


def _wire_alias(name: str) -> str:
    # Clients expect `mediaURL` / `avatarURL`, not `mediaUrl`.
    return to_camel(name).replace("Url", "URL")


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=_wire_alias, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateChatRequest(WireModel):
    type: ChatType = ChatType.DIRECT
    target_user_id: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    participant_ids: list[str] = Field(default_factory=list, max_length=256)


class UpdateChatRequest(WireModel):
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    avatar_url: Optional[str] = Field(default=None, max_length=1024)


class SendMessageRequest(WireModel):
    content: Optional[str] = Field(default=None, max_length=10_000)
    type: MessageType = MessageType.TEXT
    reply_to_id: Optional[str] = None
    media_url: Optional[str] = Field(default=None, max_length=2048)
    media_type: Optional[str] = Field(default=None, max_length=128)
    media_size: Optional[int] = Field(default=None, ge=0)


class EditMessageRequest(WireModel):
    content: str = Field(max_length=10_000)


class MarkReadRequest(WireModel):
    message_ids: list[str] = Field(default_factory=list, max_length=500)


# ---------------------------------------------------------------------------
# Gateway frames and payloads
# ---------------------------------------------------------------------------


class GatewayFrame(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: str = Field(min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _data_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("data")
    @classmethod
    def _data_size(cls, value: dict[str, Any]) -> dict[str, Any]:
        if len(value) > 64:
            raise ValueError("payload has too many keys")
        return value


class ChatRef(WireModel):
    chat_id: str = Field(min_length=1, max_length=64)


class SendMessagePayload(SendMessageRequest):
    chat_id: str = Field(min_length=1, max_length=64)
    temp_id: Optional[Any] = None


class EditMessagePayload(WireModel):
    message_id: str = Field(min_length=1, max_length=64)
    new_content: str = Field(max_length=10_000)


class MessageRef(WireModel):
    message_id: str = Field(min_length=1, max_length=64)


class MarkReadPayload(MarkReadRequest):
    chat_id: str = Field(min_length=1, max_length=64)


class TypingIndicatorPayload(ChatRef):
    is_typing: bool = False


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class PresenceUpdatePayload(WireModel):
    status: PresenceStatus


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UserProfile(WireModel):
    id: str
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


def profile_of(user) -> Optional[UserProfile]:
    """Public profile of a directory user (anonymous users are masked)."""
    data = directory.public_profile(user)
    return UserProfile.model_validate(data) if data else None


class ParticipantRead(UserProfile):
    role: ParticipantRole
    joined_at: datetime
    is_online: bool = False
    last_seen: Optional[datetime] = None


class ReadReceipt(WireModel):
    user_id: str
    read_at: datetime


class ReplyPreview(WireModel):
    id: str
    type: MessageType
    content: Optional[str] = None
    sender: Optional[UserProfile] = None


class MessageRead(WireModel):
    id: str
    chat_id: str
    sender_id: Optional[str] = None
    sender: Optional[UserProfile] = None
    type: MessageType
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    media_size: Optional[int] = None
    reply_to_id: Optional[str] = None
    reply_to: Optional[ReplyPreview] = None
    created_at: datetime
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_by: list[ReadReceipt] = Field(default_factory=list)


class Pagination(WireModel):
    current_page: int
    total_pages: int
    total: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, *, total: int, page: int, limit: int) -> "Pagination":
        total_pages = -(-total // limit) if limit > 0 else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total=total,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class ChatSummary(WireModel):
    id: str
    type: ChatType
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    last_activity: datetime
    unread_count: int = 0
    last_message: Optional[MessageRead] = None
    participant: Optional[UserProfile] = None
    is_online: Optional[bool] = None
    last_seen: Optional[datetime] = None
    participants: list[UserProfile] = Field(default_factory=list)
    participant_count: int = 0


class ChatList(WireModel):
    chat_sessions: list[ChatSummary] = Field(default_factory=list)
    pagination: Pagination


class ChatDetail(WireModel):
    id: str
    type: ChatType
    created_at: datetime
    last_activity: datetime
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    participant: Optional[UserProfile] = None
    is_online: Optional[bool] = None
    last_seen: Optional[datetime] = None
    participants: list[ParticipantRead] = Field(default_factory=list)


class ChatCreated(WireModel):
    chat_id: str
    type: ChatType
    is_existing: bool = False
    # An ended DIRECT pairing came back; both sides need the room again.
    reactivated: bool = Field(default=False, exclude=True)
    participant: Optional[UserProfile] = None
    name: Optional[str] = None
    description: Optional[str] = None


class MessageList(WireModel):
    messages: list[MessageRead] = Field(default_factory=list)
    pagination: Pagination


class SearchResult(MessageList):
    search_query: str


class UnreadCount(WireModel):
    chat_id: str
    unread_count: int


class ReadResult(WireModel):
    chat_id: str
    message_ids: list[str]
    read_by: str
    read_at: datetime


class DeletedMessage(WireModel):
    message_id: str
    chat_id: str


class OnlineUsers(WireModel):
    chat_id: str
    online_users: list[UserProfile] = Field(default_factory=list)
    count: int = 0


class ApiResponse(WireModel, Generic[T]):
    status_code: int
    data: Optional[T] = None
    message: str = "OK"
    success: bool = True
