"""
Business Hours Service - בדיקת שעות פעילות לפי אזור הזמן של המכשיר

ימי השבוע ממוספרים 0=ראשון ... 6=שבת. השוואת השעות לקסיקוגרפית על
מחרוזות HH:MM (שתי ספרות, 24 שעות), כולל שני הקצוות.

כל תקלה (אזור זמן לא תקין, הגדרה פגומה) נחשבת שעות פעילות - fail-open,
כדי שהגדרה שגויה לא תחסום את כל התעבורה.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TYPE_CHECKING
from zoneinfo import ZoneInfo

from app.core.logging import get_logger

if TYPE_CHECKING:
    from app.domain.services.bot_config_service import BotConfigService

logger = get_logger(__name__)

TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")


@dataclass(frozen=True)
class BusinessHoursResult:
    is_business_hours: bool
    off_hours_message: Optional[str] = None


_OPEN = BusinessHoursResult(is_business_hours=True)


def weekday_sunday_first(moment: datetime) -> int:
    """datetime.weekday() מתחיל בשני=0; כאן ראשון=0"""
    return (moment.weekday() + 1) % 7


def is_within_schedule(schedule: list[dict[str, Any]], local_now: datetime) -> bool:
    """האם הרגע המקומי נופל בחלון של היום. אין חלון להיום = מחוץ לשעות."""
    today = weekday_sunday_first(local_now)
    current = local_now.strftime("%H:%M")
    for entry in schedule:
        if entry.get("day") == today:
            return entry["start"] <= current <= entry["end"]
    return False


def validate_business_hours(schedule: Any) -> tuple[bool, list[str]]:
    """
    Validate a schedule list.

    Returns (valid, errors). Each entry needs an integer ``day`` in 0-6 and
    ``start`` / ``end`` in strict HH:MM form with start before end.
    """
    if not isinstance(schedule, list):
        return False, ["Business hours must be a list"]

    errors: list[str] = []
    for i, entry in enumerate(schedule):
        if not isinstance(entry, dict):
            errors.append(f"Schedule {i}: entry must be an object")
            continue

        day = entry.get("day")
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            errors.append(f"Schedule {i}: Invalid day (must be 0-6)")

        start = entry.get("start")
        end = entry.get("end")
        start_ok = isinstance(start, str) and bool(TIME_PATTERN.match(start))
        end_ok = isinstance(end, str) and bool(TIME_PATTERN.match(end))
        if not start_ok:
            errors.append(f"Schedule {i}: Invalid start time format (use HH:MM)")
        if not end_ok:
            errors.append(f"Schedule {i}: Invalid end time format (use HH:MM)")
        if start_ok and end_ok and start >= end:
            errors.append(f"Schedule {i}: Start time must be before end time")

    return len(errors) == 0, errors


def get_default_business_hours() -> list[dict[str, Any]]:
    """שני עד שישי, 09:00-17:00"""
    return [{"day": day, "start": "09:00", "end": "17:00"} for day in range(1, 6)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BusinessHoursService:
    """Evaluates a device's business-hours window at the current instant"""

    def __init__(
        self,
        config_service: Optional["BotConfigService"] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config_service = config_service
        self._now = now

    async def check_business_hours(self, device_id: str, config: Any = None) -> BusinessHoursResult:
        """
        Off-hours only when the device enabled off-hours, defined a schedule,
        and now (in the device timezone) falls outside today's window.
        """
        try:
            if config is None and self._config_service is not None:
                config = await self._config_service.get_config(device_id)

            if config is None or not config.off_hours_enabled:
                return _OPEN
            if not config.business_hours:
                return _OPEN

            local_now = self._now().astimezone(ZoneInfo(config.timezone or "UTC"))
            if is_within_schedule(config.business_hours, local_now):
                return _OPEN
            return BusinessHoursResult(False, config.off_hours_message)
        except Exception as e:
            logger.warning(
                "Business hours check failed, treating as open",
                extra_data={
                    "device_id": device_id,
                    "timezone": getattr(config, "timezone", None),
                    "error": str(e),
                },
            )
            return _OPEN
