"""
תרחיש: צופים מתנתקים באמצע ה-fanout

צופה איטי שלא קורא מהתור לא מעכב את השאר: לפי מדיניות ה-overflow הוא
מנותק או מאבד את האירועים הישנים. צופה שמתנתק באמצע האזנה מסיים את הלולאה
שלו בלי להשפיע על ההודעות שכבר נשמרו.
"""
import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.services.chat_relay import ChatRelay
from app.domain.services.rate_limiter import RateLimiter
from app.realtime.fanout import LocalFanout
from app.realtime.hub import ChatHub, OverflowPolicy
from app.realtime.session_registry import SessionRegistry
from tests.scenarios.conftest import visible_messages


def _room(db_session, fake_redis, fake_moderation, policy: str, queue_size: int = 3):
    """relay עם hub פרטי וגבול תור קטן"""
    hub = ChatHub(queue_size=queue_size, overflow_policy=policy)

    async def _redis():
        return fake_redis

    registry = SessionRegistry(hub=hub, redis_getter=_redis)
    limiter = RateLimiter(fake_redis, max_messages=100)
    relay = ChatRelay(db_session, limiter, fake_moderation, LocalFanout(hub), registry)
    return relay, registry


@pytest.mark.scenario
class TestViewerDisconnectScenario:

    @pytest.mark.asyncio
    async def test_slow_viewer_disconnected_others_keep_up(
        self, db_session: AsyncSession, sample_viewer, live_stream, fake_redis, fake_moderation
    ) -> None:
        relay, registry = _room(db_session, fake_redis, fake_moderation, OverflowPolicy.DISCONNECT)
        fast = await relay.subscribe(live_stream.id, "fast")
        slow = await relay.subscribe(live_stream.id, "slow")
        assert await registry.viewer_count(live_stream.id) == 2

        received: list[int] = []

        async def _drain():
            async for event in fast:
                received.append(event.seq)
                if len(received) == 5:
                    return

        reader = asyncio.create_task(_drain())

        for i in range(5):
            await relay.send_message(live_stream.id, sample_viewer.id, f"line {i}")
            # נותן ל-reader המהיר לרוקן את התור בין הודעות
            await asyncio.sleep(0)

        # הרביעית כבר לא נכנסה לתור המלא של האיטי
        assert slow.closed
        assert slow.close_reason == "overflow"
        assert await slow.next_event(timeout=1) is None

        # ה-handler של החיבור מנקה את הרישום
        assert await registry.unregister(live_stream.id, "slow", reason="overflow", subscription=slow)
        assert await registry.viewer_count(live_stream.id) == 1

        await asyncio.wait_for(reader, timeout=1)
        assert received == [1, 2, 3, 4, 5]
        await registry.unregister(live_stream.id, "fast")

        # הניתוקים לא נוגעים בהודעות שנשמרו
        assert await visible_messages(db_session, live_stream.id) == [f"line {i}" for i in range(5)]
        assert await registry.viewer_count(live_stream.id) == 0

    @pytest.mark.asyncio
    async def test_slow_viewer_drops_oldest(
        self, db_session: AsyncSession, sample_viewer, live_stream, fake_redis, fake_moderation
    ) -> None:
        relay, _ = _room(db_session, fake_redis, fake_moderation, OverflowPolicy.DROP_OLDEST, queue_size=2)
        lagging = await relay.subscribe(live_stream.id, "lagging")

        for i in range(5):
            await relay.send_message(live_stream.id, sample_viewer.id, f"line {i}")

        assert not lagging.closed
        assert lagging.dropped == 3
        kept = [await lagging.next_event(timeout=1) for _ in range(2)]
        assert [event.seq for event in kept] == [4, 5]

    @pytest.mark.asyncio
    async def test_disconnect_mid_stream_ends_iteration(
        self, db_session: AsyncSession, sample_viewer, live_stream, fake_redis, fake_moderation
    ) -> None:
        relay, registry = _room(db_session, fake_redis, fake_moderation, OverflowPolicy.DISCONNECT, queue_size=16)
        leaving = await relay.subscribe(live_stream.id, "leaving")
        staying = await relay.subscribe(live_stream.id, "staying")
        first_seen = asyncio.Event()
        seen: list[int] = []

        async def _listen():
            async for event in leaving:
                seen.append(event.seq)
                first_seen.set()

        listener = asyncio.create_task(_listen())
        await relay.send_message(live_stream.id, sample_viewer.id, "before")
        await asyncio.wait_for(first_seen.wait(), timeout=1)

        # החיבור נסגר; הודעות מאוחרות יותר לא מגיעות אליו
        assert await registry.unregister(live_stream.id, "leaving", reason="client_closed")
        await asyncio.wait_for(listener, timeout=1)
        await relay.send_message(live_stream.id, sample_viewer.id, "after")

        assert seen == [1]
        assert leaving.close_reason == "client_closed"
        assert [(await staying.next_event(timeout=1)).seq for _ in range(2)] == [1, 2]
        # unregister שני לאותו חיבור לא עושה כלום
        assert await registry.unregister(live_stream.id, "leaving") is False
