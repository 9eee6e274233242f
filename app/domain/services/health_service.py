"""
שירות בדיקת בריאות: בדיקות תלויות (DB, Redis, Celery broker).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של DB ו-Redis, יחד עם מצב ה-circuit breakers
  של השירותים החיצוניים (payment rail, moderation, notifications)
"""
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import StoreUnavailableError
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות, ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except (SQLAlchemyError, OSError) as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """בדיקת חיבור ל-Redis באמצעות PING."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except (RedisError, OSError, StoreUnavailableError) as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """בדיקת זמינות ה-broker של Celery (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except (RedisError, OSError) as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _external_services() -> dict[str, str]:
    """מצב ה-circuit breaker לכל שירות חיצוני שכבר נקרא בתהליך הזה"""
    return {name: state["state"] for name, state in CircuitBreaker.snapshot_all().items()}


async def check_readiness() -> dict[str, Any]:
    """
    בדיקת מוכנות: DB ו-Redis קובעים את הסטטוס הכללי.

    מחזיר dict עם:
    - status: "healthy" אם DB ו-Redis תקינים, "degraded" אחרת
    - db / redis / celery: "ok" או "error: ..."
    - external_services: מצב ה-circuit breakers (מידע בלבד)
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    required_ok = checks["db"] == _CHECK_OK and checks["redis"] == _CHECK_OK
    overall_status = _STATUS_HEALTHY if required_ok else _STATUS_DEGRADED

    if not required_ok:
        logger.warning(
            "בדיקת מוכנות: המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks, "external_services": _external_services()}
