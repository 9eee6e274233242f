"""
Session Registry: מי מחובר לאיזה stream

חברות נשמרת ב-Redis (set לכל stream: stream:{id}:sessions) כדי שמספר
הצופים יהיה משותף לכל התהליכים, וה-ChatSubscription המקומיים נשמרים
ב-dict בתהליך. אובדן Redis פוגע רק במספר הצופים המדווח, לא בנכונות.

unregister מוציא את הרשומה מה-dict לפני כל await, כך שסגירה יזומה
ו-heartbeat timeout לא יכולים שניהם לבצע teardown.
"""
from typing import Any, Awaitable, Callable

from redis.exceptions import RedisError

from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.core.exceptions import StoreUnavailableError
from app.realtime.hub import ChatHub, ChatSubscription, get_chat_hub

logger = get_logger(__name__)

_STORE_ERRORS = (RedisError, OSError, StoreUnavailableError)


def sessions_key(stream_id: int) -> str:
    return f"stream:{stream_id}:sessions"


class SessionRegistry:
    def __init__(
        self,
        hub: ChatHub | None = None,
        redis_getter: Callable[[], Awaitable[Any]] = get_redis,
    ):
        self._hub = hub
        self._get_redis = redis_getter
        self._sessions: dict[tuple[int, str], ChatSubscription] = {}

    @property
    def hub(self) -> ChatHub:
        return self._hub or get_chat_hub()

    def local_sessions(self, stream_id: int) -> list[str]:
        return [sid for (stream, sid) in self._sessions if stream == stream_id]

    def is_registered(self, stream_id: int, session_id: str) -> bool:
        return (stream_id, session_id) in self._sessions

    async def register(self, stream_id: int, session_id: str) -> ChatSubscription:
        """Subscribe the session to the stream channel and record membership"""
        key = (stream_id, session_id)
        existing = self._sessions.get(key)
        if existing is not None:
            # חיבור מחדש עם אותו session id מחליף את הקודם
            await self.unregister(stream_id, session_id, reason="replaced")

        subscription = self.hub.subscribe(stream_id, session_id)
        self._sessions[key] = subscription
        try:
            redis = await self._get_redis()
            await redis.sadd(sessions_key(stream_id), session_id)
        except _STORE_ERRORS as exc:
            logger.warning(
                "Session membership not recorded",
                extra_data={"stream_id": stream_id, "session_id": session_id, "error": str(exc)},
            )

        logger.info("Chat session registered", extra_data={"stream_id": stream_id, "session_id": session_id})
        return subscription

    async def unregister(
        self,
        stream_id: int,
        session_id: str,
        reason: str = "closed",
        subscription: ChatSubscription | None = None,
    ) -> bool:
        """
        Close the subscription and drop membership.

        Returns True only for the first call per registration. When
        `subscription` is given, a registration that has since been replaced
        is left alone.
        """
        key = (stream_id, session_id)
        current = self._sessions.get(key)
        if current is None or (subscription is not None and current is not subscription):
            return False
        del self._sessions[key]
        current.close(reason)

        try:
            redis = await self._get_redis()
            await redis.srem(sessions_key(stream_id), session_id)
        except _STORE_ERRORS as exc:
            logger.warning(
                "Session membership not removed",
                extra_data={"stream_id": stream_id, "session_id": session_id, "error": str(exc)},
            )

        logger.info(
            "Chat session unregistered",
            extra_data={"stream_id": stream_id, "session_id": session_id, "reason": reason},
        )
        return True

    async def viewer_count(self, stream_id: int) -> int:
        """Viewers across all processes; falls back to this process's count"""
        try:
            redis = await self._get_redis()
            return int(await redis.scard(sessions_key(stream_id)))
        except _STORE_ERRORS as exc:
            logger.warning(
                "Viewer count unavailable, using local count",
                extra_data={"stream_id": stream_id, "error": str(exc)},
            )
            return len(self.local_sessions(stream_id))

    async def close_all(self) -> int:
        closed = 0
        for stream_id, session_id in list(self._sessions):
            if await self.unregister(stream_id, session_id, reason="shutdown"):
                closed += 1
        return closed


_registry: SessionRegistry | None = None


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry


def reset_session_registry() -> None:
    """For tests"""
    global _registry
    _registry = None
