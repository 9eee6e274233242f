"""
Outbox Dispatcher - delivers outbox rows to their collaborators

Used by the process_outbox_messages worker and by the gift coordinator's
post-commit fast path. Each row is claimed with a conditional UPDATE first,
so the worker and the fast path never deliver the same row twice.
"""
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.outbox_message import OutboxEventType, OutboxMessage
from app.domain.services.chat_relay import ChatRelay
from app.domain.services.integrations import NotificationClient
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class OutboxDispatcher:
    def __init__(self, db: AsyncSession, chat_relay: ChatRelay, notifications: NotificationClient):
        self.db = db
        self.outbox = OutboxService(db)
        self.chat_relay = chat_relay
        self.notifications = notifications
        self._handlers: dict[OutboxEventType, Callable[[dict[str, Any]], Awaitable[None]]] = {
            OutboxEventType.GIFT_CHAT_EVENT: self._publish_gift_event,
            OutboxEventType.GIFT_NOTIFICATION: self._notify_gift_receiver,
            OutboxEventType.PAYOUT_NOTIFICATION: self._notify_payout_owner,
            OutboxEventType.OPS_ALERT: self._page_ops,
        }

    async def _publish_gift_event(self, payload: dict[str, Any]) -> None:
        await self.chat_relay.publish_gift_event(payload)

    async def _notify_gift_receiver(self, payload: dict[str, Any]) -> None:
        await self.notifications.send(payload["receiver_id"], "gift_received", payload)

    async def _notify_payout_owner(self, payload: dict[str, Any]) -> None:
        await self.notifications.send(payload["user_id"], f"payout_{payload['status']}", payload)

    async def _page_ops(self, payload: dict[str, Any]) -> None:
        await self.notifications.notify_ops(payload["kind"], payload)

    async def dispatch(self, message_id: int) -> bool | None:
        """
        Claim and deliver one row.

        Returns True when sent, False when the attempt failed (the row is
        rescheduled or FAILED), None when someone else holds the row.
        """
        if not await self.outbox.claim(message_id):
            return None

        result = await self.db.execute(
            select(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .execution_options(populate_existing=True)
        )
        message = result.scalar_one()
        event_type, dedup_key = message.event_type, message.dedup_key
        handler = self._handlers[event_type]

        try:
            await handler(message.payload)
        except Exception as exc:
            await self.db.rollback()
            logger.warning(
                "Outbox delivery failed",
                extra_data={
                    "message_id": message_id,
                    "event_type": event_type.value,
                    "dedup_key": dedup_key,
                    "error": str(exc),
                },
            )
            await self.outbox.mark_as_failed(message_id, str(exc) or exc.__class__.__name__)
            return False

        await self.outbox.mark_as_sent(message_id)
        logger.debug(
            "Outbox message delivered",
            extra_data={"message_id": message_id, "event_type": event_type.value},
        )
        return True

    async def dispatch_pending(self, limit: int = 50) -> dict[str, int]:
        messages = await self.outbox.get_pending_messages(limit=limit)
        ids = [message.id for message in messages]
        counts = {"sent": 0, "failed": 0, "skipped": 0}
        for message_id in ids:
            outcome = await self.dispatch(message_id)
            if outcome is None:
                counts["skipped"] += 1
            elif outcome:
                counts["sent"] += 1
            else:
                counts["failed"] += 1
        return counts
