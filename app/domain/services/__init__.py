"""
Domain Services
"""
from app.domain.services.outbox_service import OutboxService
from app.domain.services.alert_service import AlertService
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.stream_service import StreamService
from app.domain.services.wallet_ledger import WalletLedger
from app.domain.services.chat_relay import ChatRelay
from app.domain.services.outbox_dispatcher import OutboxDispatcher
from app.domain.services.gift_service import GiftTransactionCoordinator
from app.domain.services.subscription_service import SubscriptionLedger
from app.domain.services.payout_service import PayoutProcessor

__all__ = [
    "OutboxService",
    "AlertService",
    "RateLimiter",
    "StreamService",
    "WalletLedger",
    "ChatRelay",
    "OutboxDispatcher",
    "GiftTransactionCoordinator",
    "SubscriptionLedger",
    "PayoutProcessor",
]
