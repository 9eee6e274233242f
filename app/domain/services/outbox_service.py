"""
Outbox Service - Transactional Outbox Pattern for post-commit side effects

Rows are added to the caller's session and land in the same DB transaction as
the business change (a gift, a payout). Background workers and the
post-commit fast path deliver them.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, delete, or_, select, update

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.outbox_message import OutboxMessage, OutboxEventType, MessageStatus


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound:
        backoff = base_seconds * (2 ** retry_count), capped at max_backoff_seconds

    Never computes huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) בלי לחשב את החזקה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


class OutboxService:
    """Queue, claim and settle outbox rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_event(
        self,
        event_type: OutboxEventType,
        dedup_key: str,
        payload: dict[str, Any],
    ) -> OutboxMessage:
        """
        Add an outbox row to the current transaction. Does not commit.

        (event_type, dedup_key) is unique, so the same business event can
        never be queued twice.
        """
        message = OutboxMessage(
            event_type=event_type,
            dedup_key=dedup_key,
            payload=payload,
            status=MessageStatus.PENDING,
            retry_count=0,
            max_retries=settings.OUTBOX_MAX_RETRIES,
        )
        self.db.add(message)
        return message

    async def get_by_dedup_key(
        self, event_type: OutboxEventType, dedup_key: str
    ) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(
                OutboxMessage.event_type == event_type,
                OutboxMessage.dedup_key == dedup_key,
            )
        )
        return result.scalar_one_or_none()

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """PENDING rows whose retry time has come, oldest first"""
        now = utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, message_id: int) -> bool:
        """
        PENDING -> PROCESSING as a conditional UPDATE.

        Returns False when another worker (or the post-commit fast path)
        already claimed the row.
        """
        result = await self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.id == message_id,
                OutboxMessage.status == MessageStatus.PENDING,
            )
            .values(status=MessageStatus.PROCESSING, claimed_at=utcnow())
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_as_sent(self, message_id: int) -> None:
        await self.db.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .values(status=MessageStatus.SENT, processed_at=utcnow(), last_error=None)
        )
        await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> OutboxMessage | None:
        """Count the failure; schedule a retry with backoff or give up after max_retries"""
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        message = result.scalar_one_or_none()
        if message is None:
            return None

        message.retry_count += 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.next_retry_at = None
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()
        return message

    async def release_stuck_messages(self, older_than_minutes: int = 10) -> int:
        """
        PROCESSING rows left behind by a crashed worker go back to PENDING.

        Age counts from the last claim, not from when the row was queued.
        """
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PROCESSING,
                or_(
                    OutboxMessage.claimed_at < cutoff,
                    and_(OutboxMessage.claimed_at.is_(None), OutboxMessage.created_at < cutoff),
                ),
            )
            .values(status=MessageStatus.PENDING)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def cleanup_sent_messages(self, older_than_days: int = 7) -> int:
        """מחיקת הודעות שנשלחו. הודעות FAILED נשמרות לבדיקה."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status == MessageStatus.SENT,
                OutboxMessage.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
