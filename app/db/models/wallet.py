"""
Wallet Model - Coin Balance and Creator Earnings
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class Wallet(Base):
    """
    Current balances per user.

    coins: spendable integer balance.
    pending_earnings: accrued creator earnings not yet paid out or reserved.
    total_earnings: lifetime earnings credited.
    paid_out_earnings: lifetime earnings paid through COMPLETED payouts.
    """

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    coins = Column(Integer, nullable=False, default=0)
    pending_earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    paid_out_earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="USD")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint("coins >= 0", name="ck_wallet_coins_non_negative"),
        CheckConstraint("pending_earnings >= 0", name="ck_wallet_pending_non_negative"),
    )
