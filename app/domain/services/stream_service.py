"""
Stream Service - stream lookups, permission facts and running counters

Counters are bumped with `col = col + n` UPDATEs, so concurrent chat and gift
writers never lose increments.
"""
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StreamNotFoundError
from app.db.models.stream import Stream, StreamAggregate, StreamModerator, UserBlock
from app.db.models.user import User, UserRole


class StreamService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_stream(self, stream_id: int) -> Stream:
        result = await self.db.execute(select(Stream).where(Stream.id == stream_id))
        stream = result.scalar_one_or_none()
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return stream

    async def is_blocked(self, blocker_id: int, user_id: int) -> bool:
        result = await self.db.execute(
            select(UserBlock.id).where(
                UserBlock.blocker_id == blocker_id,
                UserBlock.blocked_id == user_id,
            )
        )
        return result.first() is not None

    async def get_moderator(self, stream_id: int, user_id: int) -> StreamModerator | None:
        result = await self.db.execute(
            select(StreamModerator).where(
                StreamModerator.stream_id == stream_id,
                StreamModerator.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def is_platform_admin(self, user_id: int) -> bool:
        result = await self.db.execute(select(User.role).where(User.id == user_id))
        role = result.scalar_one_or_none()
        return role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)

    async def can_moderate(self, stream: Stream, user_id: int, *, require_delete: bool = False) -> bool:
        """Host, an appointed moderator (with delete rights when required) or platform staff"""
        if stream.host_id == user_id:
            return True
        moderator = await self.get_moderator(stream.id, user_id)
        if moderator is not None and (moderator.can_delete_messages or not require_delete):
            return True
        return await self.is_platform_admin(user_id)

    async def _ensure_aggregate(self, stream_id: int) -> None:
        exists = await self.db.execute(
            select(StreamAggregate.stream_id).where(StreamAggregate.stream_id == stream_id)
        )
        if exists.first() is not None:
            return
        dialect = self.db.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        # ON CONFLICT DO NOTHING: יצירה מקבילית של אותה שורה
        await self.db.execute(
            insert_fn(StreamAggregate)
            .values(
                stream_id=stream_id,
                total_messages=0,
                total_gifts=0,
                total_revenue=Decimal("0.00"),
                peak_viewers=0,
            )
            .on_conflict_do_nothing(index_elements=["stream_id"])
        )

    async def increment(
        self,
        stream_id: int,
        *,
        messages: int = 0,
        gifts: int = 0,
        revenue: Decimal = Decimal("0.00"),
    ) -> None:
        """Add to the running counters inside the caller's transaction. Does not commit."""
        await self._ensure_aggregate(stream_id)
        await self.db.execute(
            update(StreamAggregate)
            .where(StreamAggregate.stream_id == stream_id)
            .values(
                total_messages=StreamAggregate.total_messages + messages,
                total_gifts=StreamAggregate.total_gifts + gifts,
                total_revenue=StreamAggregate.total_revenue + revenue,
            )
        )

    async def record_viewer_count(self, stream_id: int, viewers: int) -> None:
        """peak_viewers only grows. Commits."""
        await self._ensure_aggregate(stream_id)
        await self.db.execute(
            update(StreamAggregate)
            .where(
                StreamAggregate.stream_id == stream_id,
                StreamAggregate.peak_viewers < viewers,
            )
            .values(peak_viewers=viewers)
        )
        await self.db.commit()

    async def get_stats(self, stream_id: int) -> dict[str, Any]:
        await self.get_stream(stream_id)
        result = await self.db.execute(
            select(StreamAggregate)
            .where(StreamAggregate.stream_id == stream_id)
            .execution_options(populate_existing=True)
        )
        aggregate = result.scalar_one_or_none()
        if aggregate is None:
            return {
                "stream_id": stream_id,
                "total_messages": 0,
                "total_gifts": 0,
                "total_revenue": Decimal("0.00"),
                "peak_viewers": 0,
            }
        return {
            "stream_id": stream_id,
            "total_messages": aggregate.total_messages,
            "total_gifts": aggregate.total_gifts,
            "total_revenue": Decimal(aggregate.total_revenue),
            "peak_viewers": aggregate.peak_viewers,
        }
