"""
Auto Reply Bot - Main FastAPI Application

התהליך מארח את צינור ההחלטות: בהפעלה נבנה ה-runtime ומופעל ה-sweeper.
שכבת התעבורה (חיבור למכשירים ושליחת הודעות) חיצונית, וקוראת ל-
app.state.bot_runtime.pipeline.process_incoming לכל הודעה נכנסת.
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.redis_client import close_redis
from app.db.database import create_tables, engine
from app.domain.services.bot_runtime import build_bot_runtime
from app.domain.services.health_service import check_readiness

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="צינור החלטות לתשובות אוטומטיות ב-WhatsApp: חוקים, שעות פעילות והעברה לנציג.",
    docs_url=None,
    redoc_url=None,
)


@app.on_event("startup")
async def startup() -> None:
    """Create tables, build the bot runtime and start the sweeps"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables()
    logger.info("Database tables initialized")

    runtime = build_bot_runtime()
    runtime.sweeper.start()
    app.state.bot_runtime = runtime


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    runtime = getattr(app.state, "bot_runtime", None)
    if runtime is not None:
        await runtime.sweeper.stop()
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת DB, Redis, ואיזה אחסון משרת כרגע את מצבי השיחה. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט."
    ),
    responses={
        200: {"description": "כל התלויות תקינות"},
        503: {"description": "לפחות תלות אחת לא זמינה, או שמצבי השיחה על אחסון הגיבוי"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - בדיקת כל התלויות החיצוניות."""
    runtime = getattr(app.state, "bot_runtime", None)
    result = await check_readiness(runtime.state_store if runtime is not None else None)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
