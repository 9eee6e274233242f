"""
Gift Transaction Coordinator - a gift as one atomic unit of work

Inside one DB transaction, under the sender/receiver wallet lock:
    WalletLedger.transfer -> Gift row -> StreamAggregate counters
    -> outbox rows (chat event, receiver notification)

The chat event is delivered after commit. Its outbox row is keyed by the gift
id, so a failed publish is retried by the outbox worker and never reverses the
committed transfer.
"""
import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    GiftsDisabledError,
    IdempotencyKeyReusedError,
    InvalidOperationError,
    InvariantViolationError,
    StreamNotLiveError,
    TransientError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import TextSanitizer, quantize_money, validate_coin_amount
from app.db.database import utcnow
from app.db.models.gift import Gift
from app.db.models.outbox_message import OutboxEventType
from app.domain.services.outbox_dispatcher import OutboxDispatcher
from app.domain.services.outbox_service import OutboxService
from app.domain.services.stream_service import StreamService
from app.domain.services.wallet_ledger import WalletLedger

logger = get_logger(__name__)


@dataclass
class GiftResult:
    gift: Gift
    # True כשמפתח ה-idempotency כבר יצר מתנה קודם
    replayed: bool = False


def gift_value(coins: int) -> Decimal:
    """חלק היוצר: coins * unit price * creator share, מעוגל לסנטים"""
    return quantize_money(
        Decimal(coins) * Decimal(str(settings.COIN_UNIT_PRICE)) * Decimal(str(settings.CREATOR_SHARE))
    )


def gift_payload(gift: Gift) -> dict[str, Any]:
    return {
        "gift_id": gift.id,
        "stream_id": gift.stream_id,
        "sender_id": gift.sender_id,
        "receiver_id": gift.receiver_id,
        "gift_type": gift.gift_type,
        "coins": gift.coins,
        "value": str(gift.value),
        "message": gift.message,
        "created_at": gift.created_at.isoformat() if gift.created_at else None,
    }


class GiftTransactionCoordinator:
    def __init__(self, db: AsyncSession, dispatcher: OutboxDispatcher | None = None):
        self.db = db
        self.ledger = WalletLedger(db)
        self.streams = StreamService(db)
        self.outbox = OutboxService(db)
        self.dispatcher = dispatcher

    async def get_by_idempotency_key(self, sender_id: int, idempotency_key: str) -> Gift | None:
        result = await self.db.execute(
            select(Gift).where(Gift.sender_id == sender_id, Gift.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(existing: Gift, receiver_id: int, stream_id: int, gift_type: str, coins: int) -> GiftResult:
        """A key replays only the request it was first used with"""
        if (existing.receiver_id, existing.stream_id, existing.gift_type, existing.coins) != (
            receiver_id, stream_id, gift_type, coins,
        ):
            raise IdempotencyKeyReusedError(existing.idempotency_key, existing.id)
        return GiftResult(gift=existing, replayed=True)

    async def send_gift(
        self,
        sender_id: int,
        receiver_id: int,
        stream_id: int,
        gift_type: str,
        coins: int,
        message: str | None = None,
        is_public: bool = True,
        idempotency_key: str | None = None,
    ) -> GiftResult:
        """
        Send a gift.

        Raises:
            InvalidOperationError: sender == receiver
            IdempotencyKeyReusedError: the sender used the key for a different gift
            ValidationException: bad coins / gift type / message
            StreamNotFoundError / StreamNotLiveError / GiftsDisabledError
            WalletNotFoundError: either wallet missing
            InsufficientBalanceError: sender cannot cover the gift
            TransientError: still failing after TRANSIENT_RETRY_ATTEMPTS
        """
        if sender_id == receiver_id:
            raise InvalidOperationError("Cannot send a gift to yourself")
        validate_coin_amount(coins, settings.MAX_GIFT_COINS)
        gift_type = (gift_type or "").strip()
        if not gift_type or len(gift_type) > 50:
            raise ValidationException("gift_type must be 1-50 characters", field="gift_type")
        if message is not None:
            message = TextSanitizer.sanitize_chat(message, settings.GIFT_MESSAGE_MAX_LENGTH, field="message")

        # חזרה על בקשה שכבר חויבה מוחזרת גם אם השידור הסתיים בינתיים
        if idempotency_key:
            existing = await self.get_by_idempotency_key(sender_id, idempotency_key)
            if existing is not None:
                replayed = self._replay(existing, receiver_id, stream_id, gift_type, coins)
                logger.info(
                    "Gift replayed by idempotency key",
                    extra_data={"gift_id": existing.id, "idempotency_key": idempotency_key},
                )
                return replayed

        stream = await self.streams.get_stream(stream_id)
        if not stream.is_live:
            raise StreamNotLiveError(stream_id)
        if not stream.allow_gifts:
            raise GiftsDisabledError(stream_id)
        await self.ledger.get_wallet(receiver_id)

        attempts = max(1, settings.TRANSIENT_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                result = await self._execute(
                    sender_id, receiver_id, stream_id, gift_type, coins, message, is_public, idempotency_key
                )
                break
            except TransientError as exc:
                if attempt == attempts:
                    logger.error(
                        "Gift failed after transient retries",
                        extra_data={"sender_id": sender_id, "attempts": attempt, "error": exc.message},
                    )
                    raise
                delay = settings.TRANSIENT_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Transient gift failure, retrying",
                    extra_data={"sender_id": sender_id, "attempt": attempt, "retry_in": delay, "error": exc.message},
                )
                await asyncio.sleep(delay)

        if not result.replayed:
            await self._deliver_chat_event(result.gift)
        return result

    async def _execute(
        self,
        sender_id: int,
        receiver_id: int,
        stream_id: int,
        gift_type: str,
        coins: int,
        message: str | None,
        is_public: bool,
        idempotency_key: str | None,
    ) -> GiftResult:
        value = gift_value(coins)
        correlation_id = uuid.uuid4().hex

        try:
            async with self.ledger.locked(sender_id, receiver_id):
                if idempotency_key:
                    existing = await self.get_by_idempotency_key(sender_id, idempotency_key)
                    if existing is not None:
                        return self._replay(existing, receiver_id, stream_id, gift_type, coins)

                await self.ledger.transfer(
                    sender_id,
                    receiver_id,
                    coins,
                    value,
                    correlation_id=correlation_id,
                    reference_id=f"gift:{correlation_id}",
                )
                gift = Gift(
                    stream_id=stream_id,
                    sender_id=sender_id,
                    receiver_id=receiver_id,
                    gift_type=gift_type,
                    coins=coins,
                    value=value,
                    message=message,
                    is_public=is_public,
                    idempotency_key=idempotency_key,
                    correlation_id=correlation_id,
                    created_at=utcnow(),
                )
                self.db.add(gift)
                await self.db.flush()

                await self.streams.increment(stream_id, gifts=1, revenue=value)

                payload = gift_payload(gift)
                if is_public:
                    await self.outbox.queue_event(OutboxEventType.GIFT_CHAT_EVENT, str(gift.id), payload)
                await self.outbox.queue_event(OutboxEventType.GIFT_NOTIFICATION, str(gift.id), payload)

                await self.db.commit()
        except InvariantViolationError as exc:
            await self.ledger.report_invariant_violation(exc)
            raise
        except IntegrityError:
            await self.db.rollback()
            if idempotency_key:
                # בקשה מקבילית עם אותו מפתח הספיקה לבצע commit
                existing = await self.get_by_idempotency_key(sender_id, idempotency_key)
                if existing is not None:
                    return self._replay(existing, receiver_id, stream_id, gift_type, coins)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Gift sent",
            extra_data={
                "gift_id": gift.id,
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "stream_id": stream_id,
                "coins": coins,
                "value": str(value),
                "correlation_id": correlation_id,
            },
        )
        return GiftResult(gift=gift)

    async def _deliver_chat_event(self, gift: Gift) -> None:
        """Post-commit fast path. The outbox worker picks up whatever fails here."""
        if self.dispatcher is None or not gift.is_public:
            return
        row = await self.outbox.get_by_dedup_key(OutboxEventType.GIFT_CHAT_EVENT, str(gift.id))
        if row is None:
            return
        gift_id, outbox_id = gift.id, row.id
        delivered = await self.dispatcher.dispatch(outbox_id)
        if delivered is False:
            # ה-rollback של ה-dispatcher מפקיע את האובייקטים ב-session
            await self.db.refresh(gift)
            logger.warning(
                "Gift chat event left for the outbox worker",
                extra_data={"gift_id": gift_id, "outbox_id": outbox_id},
            )
