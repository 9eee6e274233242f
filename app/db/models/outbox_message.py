"""
Outbox Message Model - Transactional Outbox Pattern
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, UniqueConstraint

from app.db.database import Base, utcnow


class OutboxEventType(str, enum.Enum):
    GIFT_CHAT_EVENT = "gift_chat_event"
    GIFT_NOTIFICATION = "gift_notification"
    PAYOUT_NOTIFICATION = "payout_notification"
    OPS_ALERT = "ops_alert"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Side effect written in the same DB transaction as the change that caused it"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(SQLEnum(OutboxEventType), nullable=False)
    # מזהה עסקי לדה-דופליקציה, למשל gift id
    dedup_key = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=8)

    created_at = Column(DateTime, default=utcnow)
    # זמן ה-claim האחרון; לפיו מזהים שורה שנתקעה ב-PROCESSING
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_type", "dedup_key", name="uq_outbox_event_dedup"),
    )
