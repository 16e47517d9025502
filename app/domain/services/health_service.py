"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, אחסון מצבי שיחה).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: DB, Redis, ואיזה backend משרת כרגע את מצבי השיחה
"""
from typing import Any, Optional

from sqlalchemy import text

from app.core.kv_store import FailoverKeyValueStore
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_STATE_STORE_FALLBACK = "error: state_store_on_fallback"
_ERROR_STATE_STORE_MISSING = "error: state_store_not_initialized"


async def _check_db() -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """בדיקת חיבור ל-Redis באמצעות PING."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


def _check_state_store(state_store: Optional[FailoverKeyValueStore]) -> str:
    """האם מצבי השיחה נשמרים באחסון המשותף או במפה המקומית"""
    if state_store is None:
        return _ERROR_STATE_STORE_MISSING
    if state_store.active_backend is state_store.fallback:
        return _ERROR_STATE_STORE_FALLBACK
    return _CHECK_OK


async def check_readiness(state_store: Optional[FailoverKeyValueStore] = None) -> dict[str, Any]:
    """
    בדיקת מוכנות מקיפה.

    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אם יש בעיה באחת התלויות
    - db / redis / state_store: "ok" או "error: ..."
    - state_store_backend: שם ה-backend הפעיל
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "state_store": _check_state_store(state_store),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות - המערכת במצב degraded",
            extra_data=checks,
        )

    return {
        "status": overall_status,
        **checks,
        "state_store_backend": state_store.backend_name if state_store is not None else None,
    }
