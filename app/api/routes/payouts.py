"""
Payout API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic.alias_generators import to_camel

from app.api.dependencies.rail_signature import verify_rail_signature
from app.api.dependencies.services import get_payout_processor
from app.domain.services.payout_service import PayoutProcessor

router = APIRouter()


class PayoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: int
    # מחרוזת כדי לא לאבד דיוק; הולידציה בשירות
    amount: str | int | float
    method: str = Field(min_length=1, max_length=50)


class PayoutCallbackRequest(BaseModel):
    """Rail verdict. Either ``succeeded`` or ``status`` ("completed" / "failed")."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payout_id: int
    succeeded: bool | None = None
    status: str | None = None
    external_reference: str | None = Field(None, max_length=100)
    failure_reason: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def resolve_outcome(self) -> "PayoutCallbackRequest":
        if self.succeeded is None:
            normalized = (self.status or "").lower()
            if normalized not in ("completed", "failed"):
                raise ValueError("either succeeded or status (completed/failed) is required")
            self.succeeded = normalized == "completed"
        return self


class PayoutResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    currency: str
    method: str
    status: str
    external_reference: str | None
    failure_reason: str | None
    created_at: datetime | None
    processed_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v) -> str:
        return getattr(v, "value", v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return f"{v:.2f}"


@router.post(
    "/",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
    description=(
        "Reserves the amount from pending earnings and queues the submission "
        "to the payment rail."
    ),
    responses={
        400: {"description": "insufficient_balance, below_minimum, validation_error"},
        404: {"description": "wallet_not_found"},
    },
    tags=["Payouts"],
)
async def request_payout(
    request: PayoutRequest,
    processor: PayoutProcessor = Depends(get_payout_processor),
) -> PayoutResponse:
    return await processor.request_payout(request.user_id, request.amount, request.method)


@router.get(
    "/user/{user_id}",
    response_model=List[PayoutResponse],
    summary="Payouts of a user",
    tags=["Payouts"],
)
async def list_payouts(
    user_id: int,
    limit: int = Query(20, ge=1, le=100),
    processor: PayoutProcessor = Depends(get_payout_processor),
) -> List[PayoutResponse]:
    return await processor.list_for_user(user_id, limit=limit)


@router.post(
    "/callback",
    response_model=PayoutResponse,
    summary="Payment rail callback",
    description="Signed with HMAC-SHA256 of the raw body in X-Rail-Signature.",
    responses={
        403: {"description": "Missing or invalid signature"},
        404: {"description": "payout_not_found"},
    },
    tags=["Payouts"],
)
async def payout_callback(
    request: PayoutCallbackRequest,
    processor: PayoutProcessor = Depends(get_payout_processor),
    _: None = Depends(verify_rail_signature),
) -> PayoutResponse:
    return await processor.handle_callback(
        request.payout_id,
        request.succeeded,
        external_reference=request.external_reference,
        failure_reason=request.failure_reason,
    )


@router.get(
    "/{payout_id}",
    response_model=PayoutResponse,
    summary="Get a payout",
    responses={404: {"description": "payout_not_found"}},
    tags=["Payouts"],
)
async def get_payout(
    payout_id: int,
    processor: PayoutProcessor = Depends(get_payout_processor),
) -> PayoutResponse:
    return await processor.get(payout_id)
