"""
FastAPI dependencies that build domain services per request.

Collaborators (payment rail, moderation, notifications, fanout) are separate
dependencies so tests can swap them through ``app.dependency_overrides``.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import get_redis
from app.db.database import get_db
from app.domain.services.chat_relay import ChatRelay
from app.domain.services.gift_service import GiftTransactionCoordinator
from app.domain.services.integrations import (
    ModerationClient,
    NotificationClient,
    PaymentRail,
    get_moderation_client,
    get_notification_client,
    get_payment_rail,
)
from app.domain.services.outbox_dispatcher import OutboxDispatcher
from app.domain.services.payout_service import PayoutProcessor
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.subscription_service import SubscriptionLedger
from app.realtime.fanout import ChatFanout, get_chat_fanout
from app.realtime.session_registry import SessionRegistry, get_session_registry


async def get_rate_limiter() -> RateLimiter:
    return RateLimiter(await get_redis())


def get_fanout() -> ChatFanout:
    return get_chat_fanout()


def get_registry() -> SessionRegistry:
    return get_session_registry()


def get_rail() -> PaymentRail:
    return get_payment_rail()


def get_moderation() -> ModerationClient:
    return get_moderation_client()


def get_notifications() -> NotificationClient:
    return get_notification_client()


async def get_chat_relay(
    db: AsyncSession = Depends(get_db),
    moderation: ModerationClient = Depends(get_moderation),
    fanout: ChatFanout = Depends(get_fanout),
    registry: SessionRegistry = Depends(get_registry),
) -> ChatRelay:
    """History and delete. Works while the rate-limit store is down."""
    return ChatRelay(db, None, moderation, fanout, registry)


async def get_chat_sender(
    db: AsyncSession = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    moderation: ModerationClient = Depends(get_moderation),
    fanout: ChatFanout = Depends(get_fanout),
    registry: SessionRegistry = Depends(get_registry),
) -> ChatRelay:
    return ChatRelay(db, rate_limiter, moderation, fanout, registry)


async def get_gift_coordinator(
    db: AsyncSession = Depends(get_db),
    moderation: ModerationClient = Depends(get_moderation),
    fanout: ChatFanout = Depends(get_fanout),
    notifications: NotificationClient = Depends(get_notifications),
) -> GiftTransactionCoordinator:
    # פרסום אירוע מתנה לא עובר דרך ה-rate limiter, ולכן לא תלוי ב-Redis
    chat_relay = ChatRelay(db, None, moderation, fanout)
    return GiftTransactionCoordinator(db, OutboxDispatcher(db, chat_relay, notifications))


async def get_subscription_ledger(
    db: AsyncSession = Depends(get_db),
    rail: PaymentRail = Depends(get_rail),
) -> SubscriptionLedger:
    return SubscriptionLedger(db, rail)


async def get_payout_processor(
    db: AsyncSession = Depends(get_db),
    rail: PaymentRail = Depends(get_rail),
) -> PayoutProcessor:
    return PayoutProcessor(db, rail)
