"""
Chat Relay - the only writer of ChatMessage rows and the stream channel

Send path, in order:
1. stream exists / is live / chat enabled
2. sender not blocked by the host
3. rate limit
4. moderation verdict
5. sanitize content, validate metadata for the message type
6. persist
7. bump StreamAggregate.total_messages
8. commit and publish, both under the stream's publish lock, so every
   subscriber sees channel events in commit order
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    ChatDisabledError,
    ContentRejectedError,
    ExternalServiceException,
    ForbiddenError,
    InvalidOperationError,
    MessageNotFoundError,
    RateLimitedError,
    StreamNotLiveError,
    UserBlockedError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import TextSanitizer
from app.db.database import utcnow
from app.db.models.chat_message import ChatMessage, ChatMessageType
from app.db.models.stream import Stream
from app.domain.services.integrations import ModerationClient
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.stream_service import StreamService
from app.realtime.fanout import ChatFanout
from app.realtime.hub import ChatSubscription, EventKind
from app.realtime.session_registry import SessionRegistry

logger = get_logger(__name__)


# ==================== metadata per message type ====================

class _Metadata(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TextMetadata(_Metadata):
    reply_to: int | None = Field(default=None, gt=0)
    mentions: list[int] = Field(default_factory=list, max_length=10)


class EmoteMetadata(_Metadata):
    emote_id: str = Field(min_length=1, max_length=64)
    count: int = Field(default=1, ge=1, le=10)


class SystemMetadata(_Metadata):
    event: str = Field(min_length=1, max_length=50)


class GiftMetadata(_Metadata):
    gift_id: int
    gift_type: str
    coins: int = Field(gt=0)
    sender_id: int
    receiver_id: int
    value: Decimal


METADATA_SCHEMAS: dict[ChatMessageType, type[_Metadata]] = {
    ChatMessageType.TEXT: TextMetadata,
    ChatMessageType.EMOTE: EmoteMetadata,
    ChatMessageType.SYSTEM: SystemMetadata,
    ChatMessageType.GIFT: GiftMetadata,
}


def validate_metadata(message_type: ChatMessageType, raw: dict[str, Any] | None) -> dict[str, Any]:
    """Validate against the schema for the type; returns the JSON-ready dict"""
    schema = METADATA_SCHEMAS[message_type]
    try:
        parsed = schema.model_validate(raw or {})
    except ValidationError as exc:
        raise ValidationException(
            f"Invalid metadata for {message_type.value} message",
            field="metadata",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc
    return parsed.model_dump(mode="json", exclude_none=True)


def serialize_message(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "stream_id": message.stream_id,
        "user_id": message.user_id,
        "content": message.content,
        "type": message.type.value,
        "metadata": message.message_metadata or {},
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


@dataclass
class MessagePage:
    messages: list[ChatMessage]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class ChatRelay:
    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: RateLimiter | None,
        moderation: ModerationClient,
        fanout: ChatFanout,
        registry: SessionRegistry | None = None,
    ):
        # rate_limiter ו-registry נדרשים רק לשליחה ולהרשמה; פרסום מתנות עובד בלעדיהם
        self.db = db
        self.rate_limiter = rate_limiter
        self.moderation = moderation
        self.fanout = fanout
        self.registry = registry
        self.streams = StreamService(db)

    async def _check_stream_open_for_chat(self, stream_id: int) -> Stream:
        stream = await self.streams.get_stream(stream_id)
        if not stream.is_live:
            raise StreamNotLiveError(stream_id)
        if not stream.allow_chat:
            raise ChatDisabledError(stream_id)
        return stream

    async def _review(self, user_id: int, stream_id: int, content: str) -> None:
        try:
            verdict = await self.moderation.review(user_id, stream_id, content)
        except ExternalServiceException as exc:
            # מודרציה לא זמינה: ההודעה עוברת, נרשם ללוג
            logger.warning(
                "Moderation unavailable, allowing message",
                extra_data={"user_id": user_id, "stream_id": stream_id, "error": exc.message},
            )
            return
        if not verdict.allowed:
            logger.info(
                "Message rejected by moderation",
                extra_data={"user_id": user_id, "stream_id": stream_id, "reason": verdict.reason},
            )
            raise ContentRejectedError(verdict.reason)

    async def send_message(
        self,
        stream_id: int,
        user_id: int,
        content: str,
        message_type: ChatMessageType = ChatMessageType.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        stream = await self._check_stream_open_for_chat(stream_id)

        if await self.streams.is_blocked(stream.host_id, user_id):
            raise UserBlockedError(stream_id, user_id)

        if message_type == ChatMessageType.GIFT:
            raise InvalidOperationError("Gift messages are created by sending a gift")
        if message_type == ChatMessageType.SYSTEM and not await self.streams.can_moderate(stream, user_id):
            raise ForbiddenError("Only the host or moderators can post system messages")

        if self.rate_limiter is None:
            raise RuntimeError("ChatRelay.send_message requires a RateLimiter")
        decision = await self.rate_limiter.hit(user_id, stream_id)
        if not decision.allowed:
            raise RateLimitedError(
                decision.retry_after_seconds,
                self.rate_limiter.max_messages,
                self.rate_limiter.window_seconds,
            )

        await self._review(user_id, stream_id, content)

        sanitized = TextSanitizer.sanitize_chat(content, settings.CHAT_MAX_MESSAGE_LENGTH)
        clean_metadata = validate_metadata(message_type, metadata)

        async with self.fanout.publish_lock(stream_id):
            try:
                message = ChatMessage(
                    stream_id=stream_id,
                    user_id=user_id,
                    content=sanitized,
                    type=message_type,
                    message_metadata=clean_metadata or None,
                    deleted=False,
                    created_at=utcnow(),
                )
                self.db.add(message)
                await self.db.flush()
                await self.streams.increment(stream_id, messages=1)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            await self._publish(stream_id, EventKind.MESSAGE, serialize_message(message))

        logger.info(
            "Chat message sent",
            extra_data={"stream_id": stream_id, "user_id": user_id, "message_id": message.id, "type": message_type.value},
        )
        return message

    async def _publish(self, stream_id: int, kind: str, data: dict[str, Any]) -> bool:
        """Fire-and-forget: the row is committed, a failed publish is logged only"""
        try:
            await self.fanout.publish(stream_id, kind, data)
        except AppException as exc:
            logger.error(
                "Chat event publish failed",
                extra_data={"stream_id": stream_id, "kind": kind, "error": exc.message},
            )
            return False
        return True

    async def publish_gift_event(self, payload: dict[str, Any]) -> None:
        """
        Publish a committed gift into its stream channel.

        Raises on fanout failure so the outbox keeps the row for retry.
        """
        stream_id = int(payload["stream_id"])
        GiftMetadata.model_validate({
            key: payload[key]
            for key in ("gift_id", "gift_type", "coins", "sender_id", "receiver_id", "value")
        })
        async with self.fanout.publish_lock(stream_id):
            await self.fanout.publish(stream_id, EventKind.GIFT_EVENT, payload)

    async def delete_message(self, stream_id: int, message_id: int, acting_user_id: int) -> ChatMessage:
        """
        Soft delete and publish a retraction.

        Deleting an already-deleted message acknowledges without a second
        retraction.
        """
        result = await self.db.execute(
            select(ChatMessage).where(
                ChatMessage.id == message_id,
                ChatMessage.stream_id == stream_id,
            )
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise MessageNotFoundError(message_id)

        stream = await self.streams.get_stream(stream_id)
        is_author = message.user_id == acting_user_id
        if not is_author and not await self.streams.can_moderate(stream, acting_user_id, require_delete=True):
            raise ForbiddenError("You cannot delete this message")

        async with self.fanout.publish_lock(stream_id):
            await self.db.refresh(message)
            if message.deleted:
                return message
            try:
                message.deleted = True
                message.deleted_at = utcnow()
                message.deleted_by = acting_user_id
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            await self._publish(
                stream_id,
                EventKind.RETRACTION,
                {"message_id": message.id, "deleted_by": acting_user_id},
            )

        logger.info(
            "Chat message deleted",
            extra_data={"stream_id": stream_id, "message_id": message_id, "deleted_by": acting_user_id},
        )
        return message

    async def get_messages(self, stream_id: int, page: int = 1, limit: int = 50) -> MessagePage:
        """
        Non-deleted history. Page 1 holds the newest `limit` messages; each
        page is returned oldest first.
        """
        if page < 1:
            raise ValidationException("page must be >= 1", field="page")
        if not 1 <= limit <= 100:
            raise ValidationException("limit must be between 1 and 100", field="limit")
        await self.streams.get_stream(stream_id)

        visible = (ChatMessage.stream_id == stream_id, ChatMessage.deleted.is_(False))
        total = (await self.db.execute(select(func.count(ChatMessage.id)).where(*visible))).scalar_one()
        result = await self.db.execute(
            select(ChatMessage)
            .where(*visible)
            .order_by(ChatMessage.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return MessagePage(messages=messages, page=page, limit=limit, total=total)

    async def subscribe(self, stream_id: int, session_id: str) -> ChatSubscription:
        """Live, cancelable event stream for one viewer connection"""
        if self.registry is None:
            raise RuntimeError("ChatRelay.subscribe requires a SessionRegistry")
        await self.streams.get_stream(stream_id)
        return await self.registry.register(stream_id, session_id)
