"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- In-memory Redis replacement with a controllable clock
- Fake payment rail / moderation / notification collaborators
- Test data factories (users, wallets, streams)
"""
import itertools
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

import asyncio
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_moderation, get_notifications, get_rail
from app.core.exceptions import ExternalServiceException, PaymentFailedError
from app.db.database import Base, get_db, utcnow
from app.db.models.stream import Stream, StreamModerator, UserBlock
from app.db.models.user import User, UserRole
from app.db.models.wallet import Wallet
from app.domain.services.integrations import (
    ChargeResult,
    ModerationClient,
    ModerationVerdict,
    NotificationClient,
    PaymentRail,
    PayoutSubmission,
)
from app.main import app
from app.realtime.fanout import LocalFanout, set_chat_fanout
from app.realtime.hub import get_chat_hub, reset_chat_hub
from app.realtime.session_registry import SessionRegistry


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_rail, fake_moderation, fake_notifications):
    """Create test client with database and collaborator overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rail] = lambda: fake_rail
    app.dependency_overrides[get_moderation] = lambda: fake_moderation
    app.dependency_overrides[get_notifications] = lambda: fake_notifications

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake Redis
# ============================================================================

class FakeLock:
    """תחליף ל-redis lock: asyncio.Lock לפי שם"""

    def __init__(self, redis: "FakeRedis", name: str, blocking_timeout: float | None):
        self._redis = redis
        self._name = name
        self._blocking_timeout = blocking_timeout

    async def acquire(self) -> bool:
        lock = self._redis._locks.setdefault(self._name, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), self._blocking_timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def release(self) -> None:
        self._redis._locks[self._name].release()


class FakeRedis:
    """תחליף ל-Redis לבדיקות: in-memory dict עם שעון ידני ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._expires_at: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.now = 0.0
        self.published: list[tuple[str, str]] = []
        self.available = True

    def advance(self, seconds: float) -> None:
        """מזיז את השעון קדימה; מפתחות שפג תוקפם נמחקים בגישה הבאה"""
        self.now += seconds

    def _check(self) -> None:
        if not self.available:
            raise RedisConnectionError("fake redis is down")

    def _purge(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self.now:
            self._store.pop(key, None)
            self._sets.pop(key, None)
            self._expires_at.pop(key, None)

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        self._check()
        self._purge(key)
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._expires_at[key] = self.now + ex
        return True

    async def incr(self, key: str) -> int:
        """INCR אטומי: מגדיל ב-1, מאתחל ל-1 אם לא קיים"""
        self._check()
        self._purge(key)
        new_val = int(self._store.get(key, 0)) + 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> bool:
        self._check()
        self._purge(key)
        if key in self._store or key in self._sets:
            self._expires_at[key] = self.now + ttl
            return True
        return False

    async def ttl(self, key: str) -> int:
        """-2 אם המפתח לא קיים, -1 אם אין לו TTL"""
        self._check()
        self._purge(key)
        if key not in self._store and key not in self._sets:
            return -2
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return -1
        return max(1, int(round(expires_at - self.now)))

    async def delete(self, *keys: str) -> None:
        self._check()
        for key in keys:
            self._store.pop(key, None)
            self._sets.pop(key, None)
            self._expires_at.pop(key, None)

    async def sadd(self, key: str, *members: str) -> int:
        self._check()
        bucket = self._sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        self._check()
        bucket = self._sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def scard(self, key: str) -> int:
        self._check()
        return len(self._sets.get(key, ()))

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 1

    def lock(self, name: str, timeout: float | None = None, blocking_timeout: float | None = None) -> FakeLock:
        return FakeLock(self, name, blocking_timeout)

    async def aclose(self) -> None:
        self._store.clear()
        self._sets.clear()
        self._expires_at.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות, כולל ה-SessionRegistry הגלובלי."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    registry = SessionRegistry(redis_getter=_get_fake_redis)
    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.api.dependencies.services.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis), \
         patch("app.realtime.session_registry._registry", registry):
        yield _fake


@pytest.fixture
def session_registry(fake_redis) -> SessionRegistry:
    """ה-registry שה-API משתמש בו בבדיקה הנוכחית"""
    from app.realtime.session_registry import get_session_registry
    return get_session_registry()


# ============================================================================
# Realtime / lock state
# ============================================================================

@pytest.fixture(autouse=True)
def reset_realtime():
    """hub חדש ו-LocalFanout לכל בדיקה"""
    reset_chat_hub()
    set_chat_fanout(LocalFanout())
    yield
    get_chat_hub().close_all()
    reset_chat_hub()
    set_chat_fanout(None)


@pytest.fixture(autouse=True)
def reset_wallet_locks():
    """נעילות asyncio קשורות ל-event loop של הבדיקה"""
    from app.core.locks import wallet_locks
    wallet_locks._locks.clear()
    wallet_locks._refs.clear()
    yield
    wallet_locks._locks.clear()
    wallet_locks._refs.clear()


# ============================================================================
# Fake collaborators
# ============================================================================

class FakePaymentRail(PaymentRail):
    """Records every call. Set `decline` / `unavailable` to simulate failures."""

    def __init__(self) -> None:
        self.charges: list[dict] = []
        self.payouts: list[dict] = []
        self.canceled: list[str] = []
        self.decline = False
        self.unavailable = False

    def _maybe_fail(self, user_id: int) -> None:
        if self.unavailable:
            raise ExternalServiceException("payment_rail", "payment_rail is unreachable")
        if self.decline:
            raise PaymentFailedError(user_id, "card_declined")

    async def charge(self, user_id, amount, currency, description, reference) -> ChargeResult:
        self._maybe_fail(user_id)
        self.charges.append({
            "user_id": user_id,
            "amount": Decimal(amount),
            "currency": currency,
            "reference": reference,
        })
        return ChargeResult(reference=f"ch_{len(self.charges)}")

    async def submit_payout(self, payout_id, user_id, amount, currency, method) -> PayoutSubmission:
        if self.unavailable or self.decline:
            raise ExternalServiceException("payment_rail", "payout rejected")
        self.payouts.append({"payout_id": payout_id, "user_id": user_id, "amount": Decimal(amount)})
        return PayoutSubmission(external_reference=f"po_{payout_id}")

    async def cancel_subscription(self, reference: str) -> None:
        if self.unavailable:
            raise ExternalServiceException("payment_rail", "payment_rail is unreachable")
        self.canceled.append(reference)


class FakeModeration(ModerationClient):
    """מאשר הכל חוץ ממילים ב-banned_words"""

    def __init__(self) -> None:
        self.banned_words: set[str] = set()
        self.unavailable = False
        self.reviewed: list[str] = []

    async def review(self, user_id: int, stream_id: int, content: str) -> ModerationVerdict:
        if self.unavailable:
            raise ExternalServiceException("moderation", "moderation is unreachable")
        self.reviewed.append(content)
        if any(word in content.lower() for word in self.banned_words):
            return ModerationVerdict(allowed=False, reason="banned_word")
        return ModerationVerdict(allowed=True)


class FakeNotifications(NotificationClient):
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, dict]] = []
        self.ops: list[tuple[str, dict]] = []
        self.fail = False

    async def send(self, user_id: int, kind: str, payload: dict) -> None:
        if self.fail:
            raise ExternalServiceException("notifications", "notifications is unreachable")
        self.sent.append((user_id, kind, payload))

    async def notify_ops(self, kind: str, payload: dict) -> None:
        if self.fail:
            raise ExternalServiceException("notifications", "notifications is unreachable")
        self.ops.append((kind, payload))


@pytest.fixture
def fake_rail() -> FakePaymentRail:
    return FakePaymentRail()


@pytest.fixture
def fake_moderation() -> FakeModeration:
    return FakeModeration()


@pytest.fixture
def fake_notifications() -> FakeNotifications:
    return FakeNotifications()


# ============================================================================
# Test Data Factories
# ============================================================================

_username_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        username: str | None = None,
        role: UserRole = UserRole.VIEWER,
        is_active: bool = True,
    ) -> User:
        user = User(
            username=username or f"user_{next(_username_counter)}",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """
    Factory for creating test wallets.

    Inserts balances directly (no Transaction rows), so reconciliation tests
    should open wallets through WalletLedger instead.
    """
    async def _create_wallet(
        user_id: int,
        coins: int = 0,
        pending_earnings: Decimal | str = "0.00",
        total_earnings: Decimal | str | None = None,
        paid_out_earnings: Decimal | str = "0.00",
        currency: str = "USD",
    ) -> Wallet:
        pending = Decimal(str(pending_earnings))
        wallet = Wallet(
            user_id=user_id,
            coins=coins,
            pending_earnings=pending,
            total_earnings=Decimal(str(total_earnings)) if total_earnings is not None else pending,
            paid_out_earnings=Decimal(str(paid_out_earnings)),
            currency=currency,
        )
        db_session.add(wallet)
        await db_session.commit()
        await db_session.refresh(wallet)
        return wallet

    return _create_wallet


@pytest.fixture
def stream_factory(db_session: AsyncSession):
    """Factory for creating test streams"""
    async def _create_stream(
        host_id: int,
        is_live: bool = True,
        allow_chat: bool = True,
        allow_gifts: bool = True,
        title: str = "Test stream",
    ) -> Stream:
        stream = Stream(
            host_id=host_id,
            title=title,
            is_live=is_live,
            allow_chat=allow_chat,
            allow_gifts=allow_gifts,
            started_at=utcnow() if is_live else None,
        )
        db_session.add(stream)
        await db_session.commit()
        await db_session.refresh(stream)
        return stream

    return _create_stream


@pytest.fixture
def moderator_factory(db_session: AsyncSession):
    async def _create_moderator(stream_id: int, user_id: int, can_delete_messages: bool = True) -> StreamModerator:
        moderator = StreamModerator(
            stream_id=stream_id,
            user_id=user_id,
            can_delete_messages=can_delete_messages,
        )
        db_session.add(moderator)
        await db_session.commit()
        return moderator

    return _create_moderator


@pytest.fixture
def block_factory(db_session: AsyncSession):
    async def _block(blocker_id: int, blocked_id: int) -> UserBlock:
        block = UserBlock(blocker_id=blocker_id, blocked_id=blocked_id)
        db_session.add(block)
        await db_session.commit()
        return block

    return _block


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def sample_host(user_factory, wallet_factory) -> User:
    """A creator hosting streams, with an empty wallet"""
    host = await user_factory(username="host", role=UserRole.CREATOR)
    await wallet_factory(user_id=host.id)
    return host


@pytest.fixture
async def sample_viewer(user_factory, wallet_factory) -> User:
    """A viewer with 500 coins"""
    viewer = await user_factory(username="viewer")
    await wallet_factory(user_id=viewer.id, coins=500)
    return viewer


@pytest.fixture
async def live_stream(stream_factory, sample_host) -> Stream:
    return await stream_factory(host_id=sample_host.id)


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()
