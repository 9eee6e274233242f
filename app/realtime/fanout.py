"""
Chat Fanout: איך אירוע צ'אט מגיע ל-ChatHub של כל תהליך

- LocalFanout: תהליך API יחיד. publish נכנס ישר ל-hub המקומי.
- RedisFanout: כמה תהליכים. publish נשלח לערוץ Redis stream:{id}:chat,
  ו-listener בכל תהליך API מעביר כל הודעה ל-hub המקומי. Redis מסדר את כל
  ההודעות של ערוץ אחד בסדר אחד, כך שכל התהליכים רואים אותו סדר.
  Celery workers רק מפרסמים, בלי listener.

publish_lock(stream_id) עוטף commit + publish ב-ChatRelay, כך שסדר הפרסום
בערוץ שווה לסדר ה-commit.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from redis.exceptions import LockError, RedisError

from app.core.config import settings
from app.core.exceptions import LockTimeoutError, StoreUnavailableError
from app.core.locks import KeyedLockRegistry
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.realtime.hub import ChatHub, get_chat_hub

logger = get_logger(__name__)

CHANNEL_PATTERN = "stream:*:chat"
# נעילה ארוכה מזה נחשבת תקועה ומשוחררת
_PUBLISH_LOCK_TTL_SECONDS = 10
_RECONNECT_DELAY_SECONDS = 1.0


def channel_name(stream_id: int) -> str:
    return f"stream:{stream_id}:chat"


def _stream_id_from_channel(channel: str) -> int | None:
    parts = channel.split(":")
    if len(parts) != 3 or parts[0] != "stream" or parts[2] != "chat":
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


class ChatFanout(ABC):
    @abstractmethod
    async def publish(self, stream_id: int, kind: str, data: dict[str, Any]) -> None:
        """Publish one event to the stream channel"""

    @abstractmethod
    def publish_lock(self, stream_id: int):
        """Async context manager serialising commit + publish per stream"""


class LocalFanout(ChatFanout):
    def __init__(self, hub: ChatHub | None = None):
        self._hub = hub
        self._locks = KeyedLockRegistry("chat_publish")

    @property
    def hub(self) -> ChatHub:
        return self._hub or get_chat_hub()

    async def publish(self, stream_id: int, kind: str, data: dict[str, Any]) -> None:
        self.hub.publish(stream_id, kind, data)

    def publish_lock(self, stream_id: int):
        return self._locks.hold([stream_id], settings.LOCK_TIMEOUT_SECONDS)


class RedisFanout(ChatFanout):
    def __init__(self, redis_getter: Callable[[], Awaitable[Any]] = get_redis):
        self._get_redis = redis_getter

    async def publish(self, stream_id: int, kind: str, data: dict[str, Any]) -> None:
        message = json.dumps({"kind": kind, "data": data}, ensure_ascii=False, default=str)
        try:
            redis = await self._get_redis()
            await redis.publish(channel_name(stream_id), message)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError("chat_fanout", str(exc)) from exc

    @asynccontextmanager
    async def publish_lock(self, stream_id: int) -> AsyncIterator[None]:
        redis = await self._get_redis()
        lock = redis.lock(
            f"stream:{stream_id}:publish_lock",
            timeout=_PUBLISH_LOCK_TTL_SECONDS,
            blocking_timeout=settings.LOCK_TIMEOUT_SECONDS,
        )
        try:
            acquired = await lock.acquire()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError("chat_fanout", str(exc)) from exc
        if not acquired:
            raise LockTimeoutError(f"chat_publish:{stream_id}", settings.LOCK_TIMEOUT_SECONDS)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # פג תוקף הנעילה לפני השחרור
                logger.warning("Chat publish lock expired before release", extra_data={"stream_id": stream_id})


class RedisFanoutListener:
    """Relays every stream:*:chat message into this process's hub"""

    def __init__(self, hub: ChatHub | None = None, redis_getter: Callable[[], Awaitable[Any]] = get_redis):
        self._hub = hub
        self._get_redis = redis_getter
        self._task: asyncio.Task | None = None
        self._pubsub = None

    @property
    def hub(self) -> ChatHub:
        return self._hub or get_chat_hub()

    def relay(self, channel: str, raw: str) -> bool:
        """Feed one pub/sub message into the hub. Returns False for malformed input."""
        stream_id = _stream_id_from_channel(channel)
        if stream_id is None:
            return False
        try:
            message = json.loads(raw)
            kind = message["kind"]
            data = message["data"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Malformed chat fanout message", extra_data={"channel": channel})
            return False
        self.hub.publish(stream_id, kind, data)
        return True

    async def _listen(self) -> None:
        redis = await self._get_redis()
        self._pubsub = redis.pubsub()
        await self._pubsub.psubscribe(CHANNEL_PATTERN)
        logger.info("Chat fanout listener started", extra_data={"pattern": CHANNEL_PATTERN})
        async for message in self._pubsub.listen():
            if message.get("type") != "pmessage":
                continue
            self.relay(message["channel"], message["data"])

    async def _run(self) -> None:
        while True:
            try:
                await self._listen()
            except (RedisError, OSError, StoreUnavailableError) as exc:
                logger.error(
                    "Chat fanout listener lost Redis, reconnecting",
                    extra_data={"error": str(exc), "retry_in_seconds": _RECONNECT_DELAY_SECONDS},
                )
                await asyncio.sleep(_RECONNECT_DELAY_SECONDS)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="chat-fanout-listener")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None


_fanout: ChatFanout | None = None


def get_chat_fanout() -> ChatFanout:
    global _fanout
    if _fanout is None:
        _fanout = RedisFanout() if settings.CHAT_FANOUT_BACKEND == "redis" else LocalFanout()
    return _fanout


def set_chat_fanout(fanout: ChatFanout | None) -> None:
    """Workers force RedisFanout; tests inject a LocalFanout"""
    global _fanout
    _fanout = fanout
