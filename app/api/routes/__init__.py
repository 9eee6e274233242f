"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.chat import router as chat_router
from app.api.routes.gifts import router as gifts_router
from app.api.routes.payouts import router as payouts_router
from app.api.routes.streams import router as streams_router
from app.api.routes.subscriptions import router as subscriptions_router
from app.api.routes.wallets import router as wallets_router

router = APIRouter()

router.include_router(gifts_router, prefix="/gifts", tags=["gifts"])
router.include_router(chat_router, prefix="/chat", tags=["chat"])
router.include_router(streams_router, prefix="/streams", tags=["streams"])
router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(subscriptions_router, prefix="/subscriptions", tags=["subscriptions"])
router.include_router(payouts_router, prefix="/payouts", tags=["payouts"])
