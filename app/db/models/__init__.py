"""
Database Models
"""
from app.db.models.user import User, UserRole
from app.db.models.wallet import Wallet
from app.db.models.transaction import Transaction, TransactionType, TransactionStatus
from app.db.models.stream import Stream, StreamAggregate, StreamModerator, UserBlock
from app.db.models.chat_message import ChatMessage, ChatMessageType
from app.db.models.gift import Gift
from app.db.models.subscription import (
    Subscription,
    SubscriptionTier,
    SubscriptionInterval,
    SubscriptionStatus,
)
from app.db.models.payout import Payout, PayoutStatus
from app.db.models.outbox_message import OutboxMessage, OutboxEventType, MessageStatus

__all__ = [
    "User",
    "UserRole",
    "Wallet",
    "Transaction",
    "TransactionType",
    "TransactionStatus",
    "Stream",
    "StreamAggregate",
    "StreamModerator",
    "UserBlock",
    "ChatMessage",
    "ChatMessageType",
    "Gift",
    "Subscription",
    "SubscriptionTier",
    "SubscriptionInterval",
    "SubscriptionStatus",
    "Payout",
    "PayoutStatus",
    "OutboxMessage",
    "OutboxEventType",
    "MessageStatus",
]
