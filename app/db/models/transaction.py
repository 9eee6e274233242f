"""
Transaction Model - Immutable Ledger History
"""
import enum
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey,
    Enum as SQLEnum, UniqueConstraint, Index,
)

from app.db.database import Base, utcnow


class TransactionType(str, enum.Enum):
    COIN_PURCHASE = "coin_purchase"
    GIFT_SENT = "gift_sent"
    GIFT_RECEIVED = "gift_received"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    SUBSCRIPTION_EARNING = "subscription_earning"
    PAYOUT = "payout"
    WELCOME_BONUS = "welcome_bonus"
    COIN_SPEND = "coin_spend"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Base):
    """
    Append-only record of one ledger movement.

    Sign convention: `coins` and `amount` are positive for credits and
    negative for debits, so a wallet reconciles as a plain SUM over its
    COMPLETED rows.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)

    type = Column(SQLEnum(TransactionType), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)
    coins = Column(Integer, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="USD")

    # מקשר בין שתי רגלי ההעברה (GIFT_SENT / GIFT_RECEIVED)
    correlation_id = Column(String(64), nullable=True, index=True)
    # ישות עסקית קשורה, למשל "gift:12" או "payout:3"
    reference_id = Column(String(64), nullable=True)
    description = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # מונע רישום כפול של אותה תנועה
        UniqueConstraint("wallet_id", "correlation_id", "type", name="uq_wallet_correlation_type"),
        Index("ix_transactions_wallet_created", "wallet_id", "created_at"),
    )
