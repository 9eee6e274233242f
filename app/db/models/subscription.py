"""
Subscription Model - recurring creator subscriptions
"""
import enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum, Index,
)

from app.db.database import Base, utcnow


class SubscriptionTier(str, enum.Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    VIP = "vip"


class SubscriptionInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


OPEN_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    tier = Column(SQLEnum(SubscriptionTier), nullable=False)
    interval = Column(SQLEnum(SubscriptionInterval), nullable=False, default=SubscriptionInterval.MONTHLY)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False, index=True)
    failed_charge_count = Column(Integer, nullable=False, default=0)
    external_reference = Column(String(100), nullable=True)

    canceled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscriptions_subscriber_creator", "subscriber_id", "creator_id"),
        # לכל היותר מנוי פתוח אחד לכל זוג מנוי-יוצר
        Index(
            "uq_subscriptions_open_pair",
            "subscriber_id",
            "creator_id",
            unique=True,
            postgresql_where=status.in_(OPEN_SUBSCRIPTION_STATUSES),
            sqlite_where=status.in_(OPEN_SUBSCRIPTION_STATUSES),
        ),
    )
