"""
Gift API Routes
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from app.api.dependencies.services import get_gift_coordinator
from app.core.logging import get_logger
from app.domain.services.gift_service import GiftTransactionCoordinator

logger = get_logger(__name__)

router = APIRouter()


class GiftSendRequest(BaseModel):
    """Gift request. camelCase keys are accepted as well."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sender_id: int
    receiver_id: int
    stream_id: int
    gift_type: str = Field(min_length=1, max_length=50)
    coins: int
    message: str | None = None
    is_public: bool = True


class GiftResponse(BaseModel):
    id: int
    stream_id: int
    sender_id: int
    receiver_id: int
    gift_type: str
    coins: int
    value: Decimal
    message: str | None
    is_public: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("value")
    def serialize_value(self, v: Decimal) -> str:
        return f"{v:.2f}"


class GiftSendResponse(BaseModel):
    gift: GiftResponse
    replayed: bool


@router.post(
    "/send",
    response_model=GiftSendResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a gift",
    description=(
        "Moves coins from the sender to the receiver's earnings, records the gift and "
        "announces it in the stream chat. Retrying with the same Idempotency-Key "
        "returns the original gift without a second charge. Keys are scoped per sender."
    ),
    responses={
        200: {"description": "Replay of an earlier request with the same Idempotency-Key"},
        400: {"description": "insufficient_balance, invalid_operation, validation_error, stream_not_live"},
        403: {"description": "gifts_disabled"},
        404: {"description": "stream_not_found, wallet_not_found"},
        409: {"description": "idempotency_key_reused: the key belongs to a different gift by this sender"},
        503: {"description": "lock_timeout / store_unavailable (retryable)"},
    },
    tags=["Gifts"],
)
async def send_gift(
    request: GiftSendRequest,
    response: Response,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key", max_length=100),
    coordinator: GiftTransactionCoordinator = Depends(get_gift_coordinator),
) -> GiftSendResponse:
    result = await coordinator.send_gift(
        sender_id=request.sender_id,
        receiver_id=request.receiver_id,
        stream_id=request.stream_id,
        gift_type=request.gift_type,
        coins=request.coins,
        message=request.message,
        is_public=request.is_public,
        idempotency_key=idempotency_key,
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return GiftSendResponse(gift=GiftResponse.model_validate(result.gift), replayed=result.replayed)
