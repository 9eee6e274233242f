"""
Rate Limiter - fixed-window message counter per (user, stream)

The counter store is any object with async ``incr``, ``expire`` and ``ttl``
(redis.asyncio.Redis in production, FakeRedis in tests). Windows are
ephemeral: losing the store only resets limits.
"""
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from app.core.config import settings
from app.core.exceptions import StoreUnavailableError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int


class RateLimiter:
    """
    At most ``max_messages`` per ``window_seconds`` per user per stream.

    The window starts at the first message: the key gets its TTL only when
    INCR returns 1, so later messages never extend it.
    """

    KEY_PREFIX = "chat_rate_limit"

    def __init__(
        self,
        counter_store: Any,
        max_messages: int | None = None,
        window_seconds: int | None = None,
    ):
        self._store = counter_store
        self.max_messages = max_messages or settings.CHAT_RATE_LIMIT_MAX_MESSAGES
        self.window_seconds = window_seconds or settings.CHAT_RATE_LIMIT_WINDOW_SECONDS

    @classmethod
    def key_for(cls, user_id: int, stream_id: int) -> str:
        return f"{cls.KEY_PREFIX}:{user_id}:{stream_id}"

    async def hit(self, user_id: int, stream_id: int) -> RateDecision:
        """
        Count one message attempt and decide.

        Rejected attempts are counted too, so hammering during a window does
        not open a gap at its edge.

        Raises:
            StoreUnavailableError: the counter store could not be reached
        """
        key = self.key_for(user_id, stream_id)
        try:
            count = int(await self._store.incr(key))
            if count == 1:
                await self._store.expire(key, self.window_seconds)
            retry_after = self.window_seconds
            if count > self.max_messages:
                ttl = await self._store.ttl(key)
                if ttl is not None and ttl > 0:
                    retry_after = int(ttl)
                elif ttl == -1:
                    # מפתח בלי TTL (נפל בין INCR ל-EXPIRE) - משלימים כדי שלא ייחסם לתמיד
                    await self._store.expire(key, self.window_seconds)
        except (RedisError, OSError) as exc:
            logger.error(
                "Rate limit store unavailable",
                extra_data={"user_id": user_id, "stream_id": stream_id, "error": str(exc)},
            )
            raise StoreUnavailableError("rate_limit_store", str(exc)) from exc

        allowed = count <= self.max_messages
        if not allowed:
            logger.info(
                "Chat rate limit exceeded",
                extra_data={
                    "user_id": user_id,
                    "stream_id": stream_id,
                    "count": count,
                    "limit": self.max_messages,
                },
            )
        return RateDecision(
            allowed=allowed,
            count=count,
            limit=self.max_messages,
            retry_after_seconds=0 if allowed else retry_after,
        )

    async def allow(self, user_id: int, stream_id: int) -> bool:
        return (await self.hit(user_id, stream_id)).allowed
