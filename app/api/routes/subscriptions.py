"""
Subscription API Routes
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from app.api.dependencies.services import get_subscription_ledger
from app.db.models.subscription import SubscriptionInterval, SubscriptionTier
from app.domain.services.subscription_service import SubscriptionLedger

router = APIRouter()


class SubscriptionCreateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subscriber_id: int
    creator_id: int
    tier: SubscriptionTier
    interval: SubscriptionInterval = SubscriptionInterval.MONTHLY

    @field_validator("tier", "interval", mode="before")
    @classmethod
    def normalize_case(cls, v):
        return v.lower() if isinstance(v, str) else v


class SubscriptionResponse(BaseModel):
    id: int
    subscriber_id: int
    creator_id: int
    tier: SubscriptionTier
    interval: SubscriptionInterval
    status: str
    amount: Decimal
    currency: str
    current_period_start: datetime
    current_period_end: datetime
    failed_charge_count: int
    canceled_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v) -> str:
        return getattr(v, "value", v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return f"{v:.2f}"


@router.post(
    "/",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe to a creator",
    description="Charges the first period through the payment rail and credits the creator's cut.",
    responses={
        400: {"description": "invalid_operation, validation_error"},
        402: {"description": "payment_failed"},
        404: {"description": "wallet_not_found"},
        409: {"description": "already_subscribed"},
    },
    tags=["Subscriptions"],
)
async def create_subscription(
    request: SubscriptionCreateRequest,
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
) -> SubscriptionResponse:
    return await ledger.create(
        request.subscriber_id, request.creator_id, request.tier, request.interval
    )


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Get a subscription",
    responses={404: {"description": "subscription_not_found"}},
    tags=["Subscriptions"],
)
async def get_subscription(
    subscription_id: int,
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
) -> SubscriptionResponse:
    return await ledger.get(subscription_id)


@router.delete(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Cancel a subscription",
    responses={
        409: {"description": "invalid_state_transition"},
        403: {"description": "forbidden"},
        404: {"description": "subscription_not_found"},
    },
    tags=["Subscriptions"],
)
async def cancel_subscription(
    subscription_id: int,
    acting_user_id: int = Query(...),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
) -> SubscriptionResponse:
    return await ledger.cancel(subscription_id, acting_user_id)
