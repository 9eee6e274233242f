"""
Chat API Routes

REST for sending, listing and deleting messages, and a WebSocket per viewer
for the live channel.

WebSocket protocol (``/api/chat/ws?stream_id=``):
- server -> client: ``{"type": "CONNECTED", ...}`` once, then channel events
  ``{"type": "message" | "gift_event" | "retraction", "seq", "stream_id", "data"}``
- client -> server: ``PING`` (or ``{"type": "PING"}``); server answers ``{"type": "PONG"}``.
  Control frames carry no seq.
- No frame from the client for CHAT_HEARTBEAT_TIMEOUT_SECONDS closes the socket.
"""
import asyncio
import json
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_chat_relay, get_chat_sender, get_registry
from app.core.config import settings
from app.core.exceptions import StreamNotFoundError
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.chat_message import ChatMessageType
from app.domain.services.chat_relay import ChatRelay, serialize_message
from app.domain.services.stream_service import StreamService
from app.realtime.hub import ChatSubscription
from app.realtime.session_registry import SessionRegistry

logger = get_logger(__name__)

router = APIRouter()

# קודי סגירה של WebSocket
_CLOSE_STREAM_NOT_FOUND = 4404
_CLOSE_HEARTBEAT_TIMEOUT = 4408
_CLOSE_GOING_AWAY = 1001


class ChatSendRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: int
    content: str = Field(max_length=10_000)
    type: ChatMessageType = ChatMessageType.TEXT
    metadata: dict[str, Any] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class ChatMessageResponse(BaseModel):
    id: int
    stream_id: int
    user_id: int
    content: str
    type: str
    metadata: dict[str, Any]
    created_at: datetime | None


class ChatSendResponse(BaseModel):
    message: ChatMessageResponse


class ChatHistoryResponse(BaseModel):
    messages: list[ChatMessageResponse]
    page: int
    limit: int
    total: int
    has_more: bool


class ChatDeleteResponse(BaseModel):
    success: bool
    message_id: int
    deleted_by: int | None


@router.post(
    "/{stream_id}/messages",
    response_model=ChatSendResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a chat message",
    responses={
        400: {"description": "stream_not_live, validation_error, invalid_operation"},
        403: {"description": "chat_disabled, user_blocked, content_rejected, forbidden"},
        404: {"description": "stream_not_found"},
        429: {"description": "rate_limited (see Retry-After)"},
    },
    tags=["Chat"],
)
async def send_message(
    stream_id: int,
    request: ChatSendRequest,
    relay: ChatRelay = Depends(get_chat_sender),
) -> ChatSendResponse:
    message = await relay.send_message(
        stream_id,
        request.user_id,
        request.content,
        message_type=request.type,
        metadata=request.metadata,
    )
    return ChatSendResponse(message=ChatMessageResponse(**serialize_message(message)))


@router.get(
    "/{stream_id}/messages",
    response_model=ChatHistoryResponse,
    summary="Chat history",
    description="Non-deleted messages. Page 1 holds the newest messages; each page is ordered oldest first.",
    tags=["Chat"],
)
async def get_messages(
    stream_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    relay: ChatRelay = Depends(get_chat_relay),
) -> ChatHistoryResponse:
    result = await relay.get_messages(stream_id, page=page, limit=limit)
    return ChatHistoryResponse(
        messages=[ChatMessageResponse(**serialize_message(m)) for m in result.messages],
        page=result.page,
        limit=result.limit,
        total=result.total,
        has_more=result.page < result.pages,
    )


@router.delete(
    "/{stream_id}/messages/{message_id}",
    response_model=ChatDeleteResponse,
    summary="Delete a chat message",
    description="Soft delete by the author, the host, a moderator with delete rights or a platform admin.",
    responses={
        403: {"description": "forbidden"},
        404: {"description": "message_not_found, stream_not_found"},
    },
    tags=["Chat"],
)
async def delete_message(
    stream_id: int,
    message_id: int,
    acting_user_id: int = Query(...),
    relay: ChatRelay = Depends(get_chat_relay),
) -> ChatDeleteResponse:
    message = await relay.delete_message(stream_id, message_id, acting_user_id)
    return ChatDeleteResponse(success=True, message_id=message.id, deleted_by=message.deleted_by)


# ==================== WebSocket ====================

def _is_ping(raw: str | None) -> bool:
    if raw is None:
        return False
    text = raw.strip()
    if text.upper() == "PING":
        return True
    try:
        frame = json.loads(text)
    except ValueError:
        return False
    return isinstance(frame, dict) and str(frame.get("type", "")).upper() == "PING"


async def _receive_frames(websocket: WebSocket) -> str:
    """Answer PINGs until the client leaves or goes silent. Returns the close reason."""
    while True:
        try:
            message = await asyncio.wait_for(
                websocket.receive(), timeout=settings.CHAT_HEARTBEAT_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            return "heartbeat_timeout"
        if message["type"] == "websocket.disconnect":
            return "disconnected"
        if _is_ping(message.get("text")):
            await websocket.send_json({"type": "PONG"})


async def _pump_events(websocket: WebSocket, subscription: ChatSubscription) -> str:
    """Forward channel events until the subscription closes"""
    try:
        async for event in subscription:
            await websocket.send_json(event.to_frame())
    except (WebSocketDisconnect, RuntimeError):
        return "disconnected"
    return subscription.close_reason or "closed"


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    stream_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    streams = StreamService(db)
    await websocket.accept()
    try:
        await streams.get_stream(stream_id)
    except StreamNotFoundError as exc:
        await websocket.send_json({"type": "ERROR", **exc.to_dict()})
        await websocket.close(code=_CLOSE_STREAM_NOT_FOUND)
        return

    session_id = uuid.uuid4().hex
    subscription = await registry.register(stream_id, session_id)
    reason = "closed"
    receiver = pump = None
    try:
        viewers = await registry.viewer_count(stream_id)
        await streams.record_viewer_count(stream_id, viewers)
        await websocket.send_json({
            "type": "CONNECTED",
            "stream_id": stream_id,
            "session_id": session_id,
            "viewers": viewers,
        })

        receiver = asyncio.create_task(_receive_frames(websocket))
        pump = asyncio.create_task(_pump_events(websocket, subscription))
        done, _ = await asyncio.wait({receiver, pump}, return_when=asyncio.FIRST_COMPLETED)
        reason = receiver.result() if receiver in done else pump.result()
    except WebSocketDisconnect:
        reason = "disconnected"
    finally:
        for task in (receiver, pump):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in (receiver, pump) if t is not None), return_exceptions=True)
        await registry.unregister(stream_id, session_id, reason=reason, subscription=subscription)

    if reason != "disconnected":
        code = _CLOSE_HEARTBEAT_TIMEOUT if reason == "heartbeat_timeout" else _CLOSE_GOING_AWAY
        try:
            await websocket.close(code=code)
        except RuntimeError:
            # הלקוח כבר סגר
            pass
    logger.info(
        "Chat socket closed",
        extra_data={"stream_id": stream_id, "session_id": session_id, "reason": reason},
    )
