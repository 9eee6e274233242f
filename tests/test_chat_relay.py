"""
Unit tests for ChatRelay.

Covers the send path checks, moderation, soft delete with retractions,
history paging, and channel publication order.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    ChatDisabledError,
    ContentRejectedError,
    ForbiddenError,
    InvalidOperationError,
    MessageNotFoundError,
    RateLimitedError,
    StoreUnavailableError,
    StreamNotLiveError,
    UserBlockedError,
    ValidationException,
)
from app.db.models.chat_message import ChatMessage, ChatMessageType
from app.db.models.user import UserRole
from app.domain.services.chat_relay import ChatRelay
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.stream_service import StreamService
from app.realtime.fanout import LocalFanout
from app.realtime.hub import EventKind, get_chat_hub


@pytest.fixture
def relay(db_session, fake_redis, fake_moderation, session_registry):
    return ChatRelay(db_session, RateLimiter(fake_redis), fake_moderation, LocalFanout(), session_registry)


@pytest.fixture
def roomy_relay(db_session, fake_redis, fake_moderation, session_registry):
    """Relay with a limit high enough for history tests"""
    limiter = RateLimiter(fake_redis, max_messages=100)
    return ChatRelay(db_session, limiter, fake_moderation, LocalFanout(), session_registry)


@pytest.mark.unit
async def test_send_message_persists_and_publishes(relay, db_session, live_stream, sample_viewer):
    subscription = get_chat_hub().subscribe(live_stream.id, "s-1")

    message = await relay.send_message(live_stream.id, sample_viewer.id, "hello there")

    assert message.id is not None
    assert message.content == "hello there"
    assert message.type == ChatMessageType.TEXT
    event = await subscription.next_event(timeout=1)
    assert event.kind == EventKind.MESSAGE
    assert event.seq == 1
    assert event.data["id"] == message.id
    assert (await StreamService(db_session).get_stats(live_stream.id))["total_messages"] == 1


@pytest.mark.unit
async def test_content_is_escaped(relay, live_stream, sample_viewer):
    message = await relay.send_message(live_stream.id, sample_viewer.id, "<script>alert(1)</script>")

    assert "<" not in message.content
    assert message.content.startswith("&lt;script&gt;")


@pytest.mark.unit
@pytest.mark.parametrize("content", ["", "   ", "\x00\x01", "x" * 501])
async def test_invalid_content_rejected(relay, live_stream, sample_viewer, content):
    with pytest.raises(ValidationException):
        await relay.send_message(live_stream.id, sample_viewer.id, content)


@pytest.mark.unit
async def test_stream_must_be_live_with_chat_enabled(relay, stream_factory, sample_host, sample_viewer):
    offline = await stream_factory(host_id=sample_host.id, is_live=False)
    muted = await stream_factory(host_id=sample_host.id, allow_chat=False)

    with pytest.raises(StreamNotLiveError):
        await relay.send_message(offline.id, sample_viewer.id, "hi")
    with pytest.raises(ChatDisabledError):
        await relay.send_message(muted.id, sample_viewer.id, "hi")


@pytest.mark.unit
async def test_blocked_user_cannot_send(relay, block_factory, live_stream, sample_host, sample_viewer):
    await block_factory(blocker_id=sample_host.id, blocked_id=sample_viewer.id)

    with pytest.raises(UserBlockedError):
        await relay.send_message(live_stream.id, sample_viewer.id, "hi")


@pytest.mark.unit
async def test_rate_limit_rejects_sixth_message(relay, db_session, live_stream, sample_viewer):
    for i in range(5):
        await relay.send_message(live_stream.id, sample_viewer.id, f"msg {i}")

    with pytest.raises(RateLimitedError) as exc_info:
        await relay.send_message(live_stream.id, sample_viewer.id, "one too many")

    assert exc_info.value.status_code == 429
    assert 0 < exc_info.value.retry_after_seconds <= 10
    count = (await db_session.execute(select(ChatMessage))).scalars().all()
    assert len(count) == 5


@pytest.mark.unit
async def test_rate_limit_is_per_stream(relay, stream_factory, live_stream, sample_host, sample_viewer):
    other = await stream_factory(host_id=sample_host.id)
    for i in range(5):
        await relay.send_message(live_stream.id, sample_viewer.id, f"msg {i}")

    message = await relay.send_message(other.id, sample_viewer.id, "fresh window")
    assert message.stream_id == other.id


@pytest.mark.unit
async def test_rate_limit_store_down_is_transient(relay, fake_redis, live_stream, sample_viewer):
    fake_redis.available = False

    with pytest.raises(StoreUnavailableError) as exc_info:
        await relay.send_message(live_stream.id, sample_viewer.id, "hi")
    assert exc_info.value.status_code == 503


@pytest.mark.unit
async def test_moderation_rejects_content(relay, fake_moderation, live_stream, sample_viewer):
    fake_moderation.banned_words = {"spoiler"}

    with pytest.raises(ContentRejectedError) as exc_info:
        await relay.send_message(live_stream.id, sample_viewer.id, "huge SPOILER ahead")
    assert exc_info.value.details["reason"] == "banned_word"


@pytest.mark.unit
async def test_moderation_outage_allows_message(relay, fake_moderation, live_stream, sample_viewer):
    fake_moderation.unavailable = True

    message = await relay.send_message(live_stream.id, sample_viewer.id, "still here")
    assert message.id is not None


@pytest.mark.unit
async def test_gift_type_cannot_be_sent_as_chat(relay, live_stream, sample_viewer):
    with pytest.raises(InvalidOperationError):
        await relay.send_message(live_stream.id, sample_viewer.id, "fake gift", ChatMessageType.GIFT)


@pytest.mark.unit
async def test_system_messages_need_moderator(relay, live_stream, sample_host, sample_viewer):
    with pytest.raises(ForbiddenError):
        await relay.send_message(
            live_stream.id, sample_viewer.id, "stream ends soon", ChatMessageType.SYSTEM, {"event": "notice"}
        )

    message = await relay.send_message(
        live_stream.id, sample_host.id, "stream ends soon", ChatMessageType.SYSTEM, {"event": "notice"}
    )
    assert message.message_metadata == {"event": "notice"}


@pytest.mark.unit
async def test_metadata_validated_per_type(relay, live_stream, sample_viewer):
    with pytest.raises(ValidationException):
        await relay.send_message(live_stream.id, sample_viewer.id, ":wave:", ChatMessageType.EMOTE, {})
    with pytest.raises(ValidationException):
        await relay.send_message(live_stream.id, sample_viewer.id, "hi", metadata={"unknown": 1})

    emote = await relay.send_message(
        live_stream.id, sample_viewer.id, ":wave:", ChatMessageType.EMOTE, {"emote_id": "wave", "count": 3}
    )
    assert emote.message_metadata == {"emote_id": "wave", "count": 3}


@pytest.mark.unit
async def test_author_deletes_and_retraction_published(relay, live_stream, sample_viewer):
    message = await relay.send_message(live_stream.id, sample_viewer.id, "oops")
    subscription = get_chat_hub().subscribe(live_stream.id, "s-1")

    deleted = await relay.delete_message(live_stream.id, message.id, sample_viewer.id)

    assert deleted.deleted is True
    assert deleted.deleted_by == sample_viewer.id
    event = await subscription.next_event(timeout=1)
    assert event.kind == EventKind.RETRACTION
    assert event.data == {"message_id": message.id, "deleted_by": sample_viewer.id}


@pytest.mark.unit
async def test_second_delete_publishes_nothing(relay, live_stream, sample_viewer):
    message = await relay.send_message(live_stream.id, sample_viewer.id, "oops")
    await relay.delete_message(live_stream.id, message.id, sample_viewer.id)
    subscription = get_chat_hub().subscribe(live_stream.id, "s-1")

    again = await relay.delete_message(live_stream.id, message.id, sample_viewer.id)

    assert again.deleted is True
    assert subscription.pending == 0


@pytest.mark.unit
async def test_delete_permissions(
    relay, user_factory, moderator_factory, live_stream, sample_host, sample_viewer
):
    message = await relay.send_message(live_stream.id, sample_viewer.id, "rude")
    bystander = await user_factory()
    weak_mod = await user_factory()
    await moderator_factory(live_stream.id, weak_mod.id, can_delete_messages=False)

    with pytest.raises(ForbiddenError):
        await relay.delete_message(live_stream.id, message.id, bystander.id)
    with pytest.raises(ForbiddenError):
        await relay.delete_message(live_stream.id, message.id, weak_mod.id)

    deleted = await relay.delete_message(live_stream.id, message.id, sample_host.id)
    assert deleted.deleted_by == sample_host.id


@pytest.mark.unit
async def test_moderator_and_admin_can_delete(
    relay, user_factory, moderator_factory, live_stream, sample_viewer
):
    moderator = await user_factory()
    await moderator_factory(live_stream.id, moderator.id)
    admin = await user_factory(role=UserRole.ADMIN)
    first = await relay.send_message(live_stream.id, sample_viewer.id, "one")
    second = await relay.send_message(live_stream.id, sample_viewer.id, "two")

    assert (await relay.delete_message(live_stream.id, first.id, moderator.id)).deleted_by == moderator.id
    assert (await relay.delete_message(live_stream.id, second.id, admin.id)).deleted_by == admin.id


@pytest.mark.unit
async def test_delete_unknown_message(relay, live_stream, sample_host):
    with pytest.raises(MessageNotFoundError):
        await relay.delete_message(live_stream.id, 12345, sample_host.id)


@pytest.mark.unit
async def test_history_pages_newest_first_each_oldest_first(roomy_relay, live_stream, sample_viewer):
    ids = []
    for i in range(5):
        ids.append((await roomy_relay.send_message(live_stream.id, sample_viewer.id, f"m{i}")).id)
    await roomy_relay.delete_message(live_stream.id, ids[2], sample_viewer.id)

    first = await roomy_relay.get_messages(live_stream.id, page=1, limit=2)
    last = await roomy_relay.get_messages(live_stream.id, page=2, limit=2)

    assert first.total == 4
    assert [m.id for m in first.messages] == [ids[3], ids[4]]
    assert [m.id for m in last.messages] == [ids[0], ids[1]]
    assert first.pages == 2


@pytest.mark.unit
async def test_history_rejects_bad_paging(relay, live_stream):
    with pytest.raises(ValidationException):
        await relay.get_messages(live_stream.id, page=0)
    with pytest.raises(ValidationException):
        await relay.get_messages(live_stream.id, limit=101)


@pytest.mark.unit
async def test_subscribers_see_commit_order(roomy_relay, live_stream, sample_viewer, sample_host):
    first = get_chat_hub().subscribe(live_stream.id, "a")
    second = get_chat_hub().subscribe(live_stream.id, "b")

    for i in range(3):
        await roomy_relay.send_message(live_stream.id, sample_viewer.id, f"v{i}")
        await roomy_relay.send_message(live_stream.id, sample_host.id, f"h{i}")

    seen_a = [(await first.next_event(timeout=1)) for _ in range(6)]
    seen_b = [(await second.next_event(timeout=1)) for _ in range(6)]
    assert [e.seq for e in seen_a] == [1, 2, 3, 4, 5, 6]
    assert [e.data["id"] for e in seen_a] == [e.data["id"] for e in seen_b]
    assert [e.data["id"] for e in seen_a] == sorted(e.data["id"] for e in seen_a)


@pytest.mark.unit
async def test_subscribe_registers_session(relay, session_registry, live_stream):
    subscription = await relay.subscribe(live_stream.id, "viewer-1")

    assert session_registry.is_registered(live_stream.id, "viewer-1")
    assert subscription.stream_id == live_stream.id
    assert await session_registry.viewer_count(live_stream.id) == 1
