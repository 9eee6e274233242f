"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- פונקציות שליחה תמציתיות (מתנה, הודעת צ'אט) דרך ה-API
- engine על קובץ SQLite לתרחישים שצריכים session נפרד לכל coroutine
- פונקציות אימות DB (ארנק, outbox, מתנות, הודעות)
"""
from decimal import Decimal
from typing import Optional

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.db.database import Base
from app.db.models.chat_message import ChatMessage
from app.db.models.gift import Gift
from app.db.models.outbox_message import MessageStatus, OutboxEventType, OutboxMessage
from app.db.models.wallet import Wallet


# ============================================================================
# פונקציות שליחה
# ============================================================================


async def send_gift(
    client: httpx.AsyncClient,
    sender_id: int,
    receiver_id: int,
    stream_id: int,
    coins: int,
    *,
    gift_type: str = "rose",
    idempotency_key: Optional[str] = None,
) -> httpx.Response:
    """שליחת מתנה דרך POST /api/gifts/send"""
    headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
    return await client.post(
        "/api/gifts/send",
        json={
            "senderId": sender_id,
            "receiverId": receiver_id,
            "streamId": stream_id,
            "giftType": gift_type,
            "coins": coins,
        },
        headers=headers,
    )


async def send_chat(
    client: httpx.AsyncClient,
    stream_id: int,
    user_id: int,
    content: str,
) -> httpx.Response:
    """שליחת הודעת צ'אט דרך POST /api/chat/{stream_id}/messages"""
    return await client.post(
        f"/api/chat/{stream_id}/messages",
        json={"userId": user_id, "content": content},
    )


# ============================================================================
# SQLite על קובץ
# ============================================================================


@pytest.fixture
async def file_session_maker(tmp_path):
    """
    session maker על SQLite בקובץ עם NullPool.

    ה-StaticPool של db_session משתף חיבור אחד, ולכן לא מתאים לתרחישים שבהם
    כמה coroutines פותחים טרנזקציות במקביל.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scenario.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ============================================================================
# פונקציות אימות
# ============================================================================


async def get_wallet_fresh(db: AsyncSession, user_id: int) -> Wallet:
    """שליפת ארנק מה-DB, עוקף את ה-identity map"""
    result = await db.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def assert_wallet(
    db: AsyncSession,
    user_id: int,
    *,
    coins: Optional[int] = None,
    pending: Optional[str] = None,
    total: Optional[str] = None,
    paid_out: Optional[str] = None,
) -> Wallet:
    """אימות יתרות הארנק. רק השדות שהועברו נבדקים."""
    wallet = await get_wallet_fresh(db, user_id)
    if coins is not None:
        assert wallet.coins == coins, f"ארנק {user_id}: ציפינו ל-{coins} מטבעות, קיבלנו {wallet.coins}"
    if pending is not None:
        assert wallet.pending_earnings == Decimal(pending), (
            f"ארנק {user_id}: pending צפוי {pending}, קיבלנו {wallet.pending_earnings}"
        )
    if total is not None:
        assert wallet.total_earnings == Decimal(total), (
            f"ארנק {user_id}: total צפוי {total}, קיבלנו {wallet.total_earnings}"
        )
    if paid_out is not None:
        assert wallet.paid_out_earnings == Decimal(paid_out), (
            f"ארנק {user_id}: paid_out צפוי {paid_out}, קיבלנו {wallet.paid_out_earnings}"
        )
    return wallet


async def assert_outbox_count(
    db: AsyncSession,
    event_type: OutboxEventType,
    expected: int,
    status: Optional[MessageStatus] = None,
) -> None:
    """אימות מספר הודעות outbox מסוג מסוים"""
    query = select(func.count(OutboxMessage.id)).where(OutboxMessage.event_type == event_type)
    if status is not None:
        query = query.where(OutboxMessage.status == status)
    count = (await db.execute(query)).scalar_one()
    assert count == expected, f"outbox {event_type.value}: ציפינו ל-{expected}, קיבלנו {count}"


async def assert_gift_count(db: AsyncSession, stream_id: int, expected: int) -> None:
    count = (await db.execute(
        select(func.count(Gift.id)).where(Gift.stream_id == stream_id)
    )).scalar_one()
    assert count == expected, f"שידור {stream_id}: ציפינו ל-{expected} מתנות, קיבלנו {count}"


async def visible_messages(db: AsyncSession, stream_id: int) -> list[str]:
    """תוכן ההודעות שלא נמחקו, לפי סדר השליחה"""
    result = await db.execute(
        select(ChatMessage.content)
        .where(ChatMessage.stream_id == stream_id, ChatMessage.deleted.is_(False))
        .order_by(ChatMessage.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
