"""
Bot Config Service - קריאה וכתיבה של הגדרות בוט לכל מכשיר

הצינור רק קורא (get_config). upsert_config משמש את צד הניהול ומאמת
שעות פעילות, אזור זמן ורשימות מילות מפתח לפני כתיבה.
"""
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import ErrorCode, ValidationException
from app.core.logging import get_logger
from app.db.models.device_bot_config import DeviceBotConfig
from app.domain.services.business_hours_service import validate_business_hours

logger = get_logger(__name__)

# שדות שמותר לעדכן דרך upsert_config
EDITABLE_FIELDS = frozenset({
    "bot_enabled",
    "timezone",
    "business_hours",
    "off_hours_enabled",
    "off_hours_message",
    "handoff_keywords",
    "resume_keywords",
    "handoff_message",
    "resume_message",
    "ignore_groups",
})


def _validate_keywords(field: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationException(f"{field} must be a list of strings", field=field)
    # מילה ריקה הייתה תופסת כל הודעה
    return [item.strip() for item in value if item.strip()]


def _validate_timezone(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationException(
            "timezone must be a non-empty string",
            field="timezone",
            error_code=ErrorCode.INVALID_TIMEZONE,
        )
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationException(
            f"Unknown timezone: {value}",
            field="timezone",
            error_code=ErrorCode.INVALID_TIMEZONE,
        )
    return value


class BotConfigService:
    """Device bot configuration lookups and admin writes"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_config(self, device_id: str) -> Optional[DeviceBotConfig]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceBotConfig).where(DeviceBotConfig.device_id == device_id)
            )
            return result.scalar_one_or_none()

    async def get_config_or_default(self, device_id: str) -> DeviceBotConfig:
        """הגדרה שמורה, או תצוגת ברירת מחדל שלא נשמרת (בוט כבוי)"""
        config = await self.get_config(device_id)
        if config is not None:
            return config
        return DeviceBotConfig(
            device_id=device_id,
            bot_enabled=False,
            timezone=settings.DEFAULT_TIMEZONE,
            business_hours=[],
            off_hours_enabled=False,
            off_hours_message=None,
            handoff_keywords=settings.default_handoff_keywords,
            resume_keywords=settings.default_resume_keywords,
            handoff_message=settings.DEFAULT_HANDOFF_MESSAGE,
            resume_message=settings.DEFAULT_RESUME_MESSAGE,
            ignore_groups=True,
        )

    def _validate(self, updates: dict[str, Any]) -> dict[str, Any]:
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValidationException(
                f"Unknown config fields: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )

        cleaned = dict(updates)
        if "business_hours" in cleaned and cleaned["business_hours"] is not None:
            valid, errors = validate_business_hours(cleaned["business_hours"])
            if not valid:
                raise ValidationException(
                    "Invalid business hours",
                    field="business_hours",
                    error_code=ErrorCode.INVALID_BUSINESS_HOURS,
                    details={"errors": errors},
                )
        if "timezone" in cleaned:
            cleaned["timezone"] = _validate_timezone(cleaned["timezone"])
        for field in ("handoff_keywords", "resume_keywords"):
            if field in cleaned:
                cleaned[field] = _validate_keywords(field, cleaned[field])
        return cleaned

    async def upsert_config(self, device_id: str, updates: dict[str, Any]) -> DeviceBotConfig:
        """יצירה או עדכון חלקי. זורק ValidationException לפני כל כתיבה."""
        cleaned = self._validate(updates)

        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceBotConfig).where(DeviceBotConfig.device_id == device_id)
            )
            config = result.scalar_one_or_none()
            created = config is None
            if created:
                config = DeviceBotConfig(
                    device_id=device_id,
                    timezone=settings.DEFAULT_TIMEZONE,
                    handoff_keywords=settings.default_handoff_keywords,
                    resume_keywords=settings.default_resume_keywords,
                )
                session.add(config)

            for field, value in cleaned.items():
                setattr(config, field, value)

            await session.commit()
            await session.refresh(config)

        logger.info(
            "Bot config created" if created else "Bot config updated",
            extra_data={"device_id": device_id, "fields": sorted(cleaned)},
        )
        return config
