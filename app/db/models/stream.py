"""
Stream Models - live stream flags, running counters, moderators and blocks
"""
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Boolean, Numeric, DateTime, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class Stream(Base):
    """Only the fields the economy and chat core read; editing lives elsewhere"""

    __tablename__ = "streams"

    id = Column(Integer, primary_key=True, index=True)
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=True)

    is_live = Column(Boolean, default=False, nullable=False)
    allow_chat = Column(Boolean, default=True, nullable=False)
    allow_gifts = Column(Boolean, default=True, nullable=False)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    host = relationship("User")


class StreamAggregate(Base):
    """Per-stream running counters. Only incremented; corrections are explicit."""

    __tablename__ = "stream_aggregates"

    stream_id = Column(Integer, ForeignKey("streams.id"), primary_key=True)
    total_messages = Column(Integer, nullable=False, default=0)
    total_gifts = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    peak_viewers = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class StreamModerator(Base):
    """Moderator appointed by the host for a specific stream"""

    __tablename__ = "stream_moderators"

    id = Column(Integer, primary_key=True, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    can_delete_messages = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("stream_id", "user_id", name="uq_stream_moderator"),
    )


class UserBlock(Base):
    """blocker_id חסם את blocked_id. חסימה של מארח חלה על כל הצ'אטים שלו."""

    __tablename__ = "user_blocks"

    id = Column(Integer, primary_key=True, index=True)
    blocker_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    blocked_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="uq_user_block"),
    )
