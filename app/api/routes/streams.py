"""
Stream API Routes
"""
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_registry
from app.db.database import get_db
from app.domain.services.stream_service import StreamService
from app.realtime.session_registry import SessionRegistry

router = APIRouter()


class StreamStatsResponse(BaseModel):
    stream_id: int
    total_messages: int
    total_gifts: int
    total_revenue: Decimal
    peak_viewers: int
    current_viewers: int

    @field_serializer("total_revenue")
    def serialize_revenue(self, v: Decimal) -> str:
        return f"{v:.2f}"


@router.get(
    "/{stream_id}/stats",
    response_model=StreamStatsResponse,
    summary="Stream counters",
    description="Running totals for messages, gifts and revenue, the peak and the current viewer count.",
    responses={404: {"description": "stream_not_found"}},
    tags=["Streams"],
)
async def get_stream_stats(
    stream_id: int,
    db: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> StreamStatsResponse:
    stats = await StreamService(db).get_stats(stream_id)
    return StreamStatsResponse(**stats, current_viewers=await registry.viewer_count(stream_id))
