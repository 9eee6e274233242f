"""
Wallet API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_rail
from app.db.database import get_db
from app.domain.services.integrations import PaymentRail
from app.domain.services.wallet_ledger import WalletLedger

router = APIRouter()


class WalletResponse(BaseModel):
    user_id: int
    coins: int
    pending_earnings: Decimal
    total_earnings: Decimal
    paid_out_earnings: Decimal
    currency: str

    model_config = {"from_attributes": True}

    @field_serializer("pending_earnings", "total_earnings", "paid_out_earnings")
    def serialize_money(self, v: Decimal) -> str:
        return f"{v:.2f}"


class TransactionResponse(BaseModel):
    id: int
    type: str
    status: str
    coins: int | None
    amount: Decimal
    currency: str
    correlation_id: str | None
    reference_id: str | None
    description: str | None
    created_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("type", "status")
    def serialize_enum(self, v) -> str:
        return getattr(v, "value", v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return f"{v:.2f}"


class CoinPurchaseRequest(BaseModel):
    coins: int
    payment_method: str = Field(min_length=1, max_length=50)


class ReconciliationResponse(BaseModel):
    user_id: int
    consistent: bool
    coins: int
    coins_from_ledger: int
    total_earnings: str
    total_earnings_from_ledger: str
    paid_out_earnings: str
    paid_out_from_ledger: str
    reserved_earnings: str
    pending_earnings: str
    expected_pending_earnings: str
    mismatches: dict[str, dict[str, str]]


@router.post(
    "/{user_id}",
    response_model=WalletResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a wallet",
    description="Creates the wallet with the welcome bonus. Returns the existing wallet when already open.",
    tags=["Wallets"],
)
async def open_wallet(user_id: int, db: AsyncSession = Depends(get_db)) -> WalletResponse:
    return await WalletLedger(db).open_wallet(user_id)


@router.get(
    "/{user_id}",
    response_model=WalletResponse,
    summary="Wallet balances",
    responses={404: {"description": "wallet_not_found"}},
    tags=["Wallets"],
)
async def get_wallet(user_id: int, db: AsyncSession = Depends(get_db)) -> WalletResponse:
    return await WalletLedger(db).get_wallet(user_id)


@router.get(
    "/{user_id}/transactions",
    response_model=List[TransactionResponse],
    summary="Transaction history",
    description="Newest first.",
    tags=["Wallets"],
)
async def get_transactions(
    user_id: int,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> List[TransactionResponse]:
    return await WalletLedger(db).history(user_id, limit=limit, offset=offset)


@router.post(
    "/{user_id}/coins/purchase",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy coins",
    description="Charges the payment rail for coins x unit price, then credits the coins.",
    responses={
        402: {"description": "payment_failed"},
        503: {"description": "external_service_unavailable"},
    },
    tags=["Wallets"],
)
async def purchase_coins(
    user_id: int,
    request: CoinPurchaseRequest,
    db: AsyncSession = Depends(get_db),
    rail: PaymentRail = Depends(get_rail),
) -> TransactionResponse:
    return await WalletLedger(db).purchase_coins(user_id, request.coins, request.payment_method, rail)


@router.get(
    "/{user_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Reconcile a wallet against its transactions",
    tags=["Wallets"],
)
async def reconcile_wallet(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_admin_api_key),
) -> ReconciliationResponse:
    report = await WalletLedger(db).reconcile(user_id)
    return ReconciliationResponse(
        user_id=report.user_id,
        consistent=report.is_consistent,
        coins=report.coins,
        coins_from_ledger=report.coins_from_ledger,
        total_earnings=str(report.total_earnings),
        total_earnings_from_ledger=str(report.total_earnings_from_ledger),
        paid_out_earnings=str(report.paid_out_earnings),
        paid_out_from_ledger=str(report.paid_out_from_ledger),
        reserved_earnings=str(report.reserved_earnings),
        pending_earnings=str(report.pending_earnings),
        expected_pending_earnings=str(report.expected_pending_earnings),
        mismatches=report.mismatches,
    )
