"""
Chat Message Model
"""
import enum
from sqlalchemy import (
    Column, Integer, Text, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum, Index,
)

from app.db.database import Base, utcnow


class ChatMessageType(str, enum.Enum):
    TEXT = "text"
    EMOTE = "emote"
    SYSTEM = "system"
    GIFT = "gift"


class ChatMessage(Base):
    """Persisted chat line. Never hard-deleted, moderation keeps the audit trail."""

    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    content = Column(Text, nullable=False)
    type = Column(SQLEnum(ChatMessageType), nullable=False, default=ChatMessageType.TEXT)
    # "metadata" שמור ב-declarative API
    message_metadata = Column("metadata", JSON, nullable=True)

    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_chat_messages_stream_id_id", "stream_id", "id"),
    )
