"""
Chat Hub: fanout מקומי לצופים המחוברים לתהליך הזה

כל צופה מקבל ChatSubscription עם תור חסום. publish לא ממתין לאף צופה:
צופה איטי מאבד אירועים ישנים (drop_oldest) או מנותק (disconnect), והשולח
לעולם לא נחסם.

לכל ערוץ (stream) יש מונה seq עולה. כל המנויים של אותו ערוץ מקבלים את
האירועים באותו סדר ועם אותם seq.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class EventKind:
    MESSAGE = "message"
    GIFT_EVENT = "gift_event"
    RETRACTION = "retraction"


class OverflowPolicy:
    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class ChatEvent:
    stream_id: int
    seq: int
    kind: str
    data: dict[str, Any]

    def to_frame(self) -> dict[str, Any]:
        return {"type": self.kind, "stream_id": self.stream_id, "seq": self.seq, "data": self.data}


_CLOSED = object()


@dataclass(eq=False)
class ChatSubscription:
    """
    One viewer connection's live, cancelable event stream.

    Iterate with ``async for``; iteration ends when the subscription closes.
    Events still queued at close are discarded.
    """
    hub: "ChatHub"
    stream_id: int
    session_id: str
    maxsize: int
    policy: str
    dropped: int = 0
    close_reason: str | None = None
    _queue: asyncio.Queue = field(init=False, repr=False)
    _closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        # מקום אחד נוסף שמור לסמן הסגירה
        self._queue = asyncio.Queue(maxsize=self.maxsize + 1)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: ChatEvent) -> bool:
        """Non-blocking enqueue. Returns False when the event was not queued."""
        if self._closed:
            return False
        if self._queue.qsize() >= self.maxsize:
            if self.policy == OverflowPolicy.DISCONNECT:
                logger.warning(
                    "Chat subscriber overflow, disconnecting",
                    extra_data={"stream_id": self.stream_id, "session_id": self.session_id},
                )
                self.close("overflow")
                return False
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)
        return True

    def close(self, reason: str = "closed") -> bool:
        """Idempotent. Returns True only for the call that actually closed."""
        if self._closed:
            return False
        self._closed = True
        self.close_reason = reason
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        self.hub._remove(self)
        return True

    async def next_event(self, timeout: float | None = None) -> ChatEvent | None:
        """Next event, or None when closed. Raises asyncio.TimeoutError on timeout."""
        if self._closed and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "ChatSubscription":
        return self

    async def __anext__(self) -> ChatEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class ChatHub:
    """Per-stream subscriber sets and sequence counters for this process"""

    def __init__(self, queue_size: int | None = None, overflow_policy: str | None = None):
        self.queue_size = queue_size or settings.CHAT_SUBSCRIBER_QUEUE_SIZE
        self.overflow_policy = overflow_policy or settings.CHAT_OVERFLOW_POLICY
        self._channels: dict[int, set[ChatSubscription]] = {}
        self._seq: dict[int, int] = {}

    def subscribe(self, stream_id: int, session_id: str) -> ChatSubscription:
        subscription = ChatSubscription(
            hub=self,
            stream_id=stream_id,
            session_id=session_id,
            maxsize=self.queue_size,
            policy=self.overflow_policy,
        )
        self._channels.setdefault(stream_id, set()).add(subscription)
        return subscription

    def _remove(self, subscription: ChatSubscription) -> None:
        subscribers = self._channels.get(subscription.stream_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._channels[subscription.stream_id]

    def subscriber_count(self, stream_id: int) -> int:
        return len(self._channels.get(stream_id, ()))

    def last_seq(self, stream_id: int) -> int:
        return self._seq.get(stream_id, 0)

    def publish(self, stream_id: int, kind: str, data: dict[str, Any]) -> ChatEvent:
        """
        Stamp the next seq and hand the event to every current subscriber.

        No await between stamping and delivery, so two publishes on one
        channel never interleave.
        """
        seq = self._seq.get(stream_id, 0) + 1
        self._seq[stream_id] = seq
        event = ChatEvent(stream_id=stream_id, seq=seq, kind=kind, data=data)

        delivered = 0
        for subscription in list(self._channels.get(stream_id, ())):
            if subscription.deliver(event):
                delivered += 1

        logger.debug(
            "Chat event published",
            extra_data={"stream_id": stream_id, "seq": seq, "kind": kind, "delivered": delivered},
        )
        return event

    def close_all(self) -> None:
        for subscribers in list(self._channels.values()):
            for subscription in list(subscribers):
                subscription.close("shutdown")


_hub: ChatHub | None = None


def get_chat_hub() -> ChatHub:
    global _hub
    if _hub is None:
        _hub = ChatHub()
    return _hub


def reset_chat_hub() -> None:
    """For tests"""
    global _hub
    _hub = None
