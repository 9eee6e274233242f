"""
Stream Economy - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.realtime.fanout import RedisFanoutListener
from app.realtime.session_registry import get_session_registry

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Gifts", "description": "שליחת מתנות בשידור: חיוב מטבעות, זיכוי היוצר ואירוע בצ'אט."},
    {"name": "Chat", "description": "צ'אט חי: שליחה, היסטוריה, מחיקה, ו-WebSocket לצופים."},
    {"name": "Streams", "description": "מונים מצטברים של שידור וצופים מחוברים."},
    {"name": "Wallets", "description": "ארנק: יתרת מטבעות, רווחים, היסטוריה, רכישת מטבעות והתאמה מול הלדג'ר."},
    {"name": "Subscriptions", "description": "מנויים ליוצרים: הרשמה וביטול. חידוש רץ ב-Celery."},
    {"name": "Payouts", "description": "משיכת רווחים ו-callback חתום מרשת התשלומים."},
    {"name": "Health", "description": "Liveness ו-readiness."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "כלכלת שידורים חיים: ארנקים, מתנות, מנויים ומשיכות, "
        "יחד עם צ'אט בזמן אמת לכל שידור."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Idempotency-Key", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")

_fanout_listener: RedisFanoutListener | None = None


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the cross-process chat listener"""
    global _fanout_listener
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    if settings.CHAT_FANOUT_BACKEND == "redis":
        _fanout_listener = RedisFanoutListener()
        _fanout_listener.start()
        logger.info("Chat fanout listener started")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    global _fanout_listener
    logger.info("Shutting down application")
    if _fanout_listener is not None:
        await _fanout_listener.stop()
        _fanout_listener = None
    # כל ה-WebSockets נסגרים עם סיבה shutdown
    closed = await get_session_registry().close_all()
    logger.info("Chat sessions closed", extra_data={"count": closed})
    # סגירת חיבור Redis
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות, כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness: התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקה של DB, Redis ו-Celery broker, יחד עם מצב ה-circuit breakers. "
        "מחזיר status=healthy אם DB ו-Redis תקינים, או status=degraded."
    ),
    responses={
        200: {
            "description": "DB ו-Redis תקינים",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "redis": "ok",
                        "celery": "ok",
                        "external_services": {"payment_rail": "closed"},
                    }
                }
            },
        },
        503: {
            "description": "DB או Redis לא זמינים",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                        "external_services": {},
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness: בדיקת DB ו-Redis."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
