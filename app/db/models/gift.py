"""
Gift Model
"""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, ForeignKey, UniqueConstraint

from app.db.database import Base, utcnow


class Gift(Base):
    """
    Immutable record of a completed gift.

    Written only inside the same DB transaction as the two ledger movements,
    so a Gift row always has matching GIFT_SENT / GIFT_RECEIVED transactions.
    """

    __tablename__ = "gifts"

    id = Column(Integer, primary_key=True, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    gift_type = Column(String(50), nullable=False)
    coins = Column(Integer, nullable=False)
    value = Column(Numeric(12, 2), nullable=False)  # חלק היוצר
    message = Column(String(200), nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)

    # ייחודי ביחד עם sender_id
    idempotency_key = Column(String(100), nullable=True)
    correlation_id = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("sender_id", "idempotency_key", name="uq_gifts_sender_idempotency_key"),
    )
