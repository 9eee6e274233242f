"""
Payout Model - creator withdrawals handed to the payment rail
"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # תנועת PAYOUT שנרשמה כ-PENDING בזמן הבקשה
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    method = Column(String(50), nullable=False)
    status = Column(SQLEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING, index=True)

    external_reference = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PayoutStatus.COMPLETED, PayoutStatus.FAILED)
