from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from carechat.apps.accounts import models as account_models  # noqa: F401  (registers "User")
from carechat.database import Base
from carechat.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatType(str, enum.Enum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


class ParticipantRole(str, enum.Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    MEDIA = "MEDIA"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"


def direct_pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a two-party chat."""
    low, high = sorted((str(user_a), str(user_b)))
    return f"{low}:{high}"


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        UniqueConstraint("pair_key", name="uq_chat_sessions_pair_key"),
        Index("ix_chat_sessions_active_last_activity", "is_active", "last_activity"),
        CheckConstraint(
            "(type = 'DIRECT' AND user1_id IS NOT NULL AND user2_id IS NOT NULL) OR type = 'GROUP'",
            name="ck_chat_sessions_direct_users",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    type = Column(SAEnum(ChatType, name="chat_type_enum", native_enum=False), nullable=False)

    # DIRECT only; fixed at creation.
    user1_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    user2_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    pair_key = Column(String(80), nullable=True)

    # GROUP only; editable by admins.
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    avatar_url = Column(String(1024), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_activity = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user1 = relationship("User", foreign_keys=[user1_id], lazy="joined")
    user2 = relationship("User", foreign_keys=[user2_id], lazy="joined")
    participants = relationship(
        "ChatParticipant",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatParticipant.joined_at",
    )
    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ChatParticipant(Base):
    __tablename__ = "chat_participants"
    __table_args__ = (
        UniqueConstraint("chat_id", "user_id", name="uq_chat_participants_chat_user"),
        Index("ix_chat_participants_user_active", "user_id", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    chat_id = Column(String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(
        SAEnum(ParticipantRole, name="participant_role_enum", native_enum=False),
        nullable=False,
        default=ParticipantRole.MEMBER,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    left_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("ChatSession", back_populates="participants")
    user = relationship("User", lazy="joined")


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_chat_created_at", "chat_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    chat_id = Column(String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(
        SAEnum(MessageType, name="message_type_enum", native_enum=False),
        nullable=False,
        default=MessageType.TEXT,
    )
    content = Column(Text, nullable=True)
    media_url = Column(String(2048), nullable=True)
    media_type = Column(String(128), nullable=True)
    media_size = Column(Integer, nullable=True)
    reply_to_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("ChatSession", back_populates="messages")
    sender = relationship("User", lazy="joined")
    reply_to = relationship("ChatMessage", remote_side=[id], lazy="joined", join_depth=1)
    reads = relationship(
        "MessageRead",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageRead.read_at",
    )


class MessageRead(Base):
    __tablename__ = "message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reads_message_user"),
        Index("ix_message_reads_user_message", "user_id", "message_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    message = relationship("ChatMessage", back_populates="reads")


class UserPresence(Base):
    __tablename__ = "user_presence"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_presence_user"),
        CheckConstraint(
            "connection_id IS NULL OR is_online",
            name="ck_user_presence_connection_online",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    connection_id = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
