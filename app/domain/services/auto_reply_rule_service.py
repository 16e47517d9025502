"""
Auto Reply Rule Service - שליפה וניהול של חוקי תשובה אוטומטית

list_active_rules משרת את מנוע ההתאמה (עדיפות יורדת, ואז id עולה כדי
שסדר השוויון יהיה יציב). פעולות הכתיבה משרתות את צד הניהול ומאמתות
את החוק לפני שמירה.
"""
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ErrorCode, RuleNotFoundException, ValidationException
from app.core.logging import get_logger
from app.db.models.auto_reply_rule import AutoReplyRule, MatchType
from app.domain.services.auto_reply_service import validate_regex

logger = get_logger(__name__)

REQUIRED_FIELDS = ("name", "trigger", "response")
EDITABLE_FIELDS = frozenset({
    "name",
    "trigger",
    "match_type",
    "response",
    "priority",
    "is_active",
    "cooldown_seconds",
})


def _validate_rule_fields(data: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    unknown = set(data) - EDITABLE_FIELDS
    if unknown:
        raise ValidationException(
            f"Unknown rule fields: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )

    cleaned = dict(data)
    for field in REQUIRED_FIELDS:
        if field not in cleaned and partial:
            continue
        value = cleaned.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationException(f"{field} is required", field=field)

    if "match_type" in cleaned:
        try:
            cleaned["match_type"] = MatchType(cleaned["match_type"])
        except ValueError:
            raise ValidationException(
                f"Invalid match type: {cleaned['match_type']}",
                field="match_type",
                error_code=ErrorCode.INVALID_MATCH_TYPE,
                details={"allowed": [m.value for m in MatchType]},
            )

    if "cooldown_seconds" in cleaned:
        cooldown = cleaned["cooldown_seconds"]
        if isinstance(cooldown, bool) or not isinstance(cooldown, int) or cooldown < 0:
            raise ValidationException("cooldown_seconds must be an integer >= 0", field="cooldown_seconds")

    if "priority" in cleaned:
        priority = cleaned["priority"]
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationException("priority must be an integer", field="priority")

    return cleaned


def _check_regex(match_type: Any, trigger: str) -> None:
    if MatchType(match_type) != MatchType.REGEX:
        return
    result = validate_regex(trigger)
    if not result.valid:
        raise ValidationException(
            f"Invalid regex: {result.error}",
            field="trigger",
            error_code=ErrorCode.INVALID_REGEX,
        )


class AutoReplyRuleService:
    """CRUD over AutoReplyRule, one short session per call"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_rules(self, device_id: str) -> list[AutoReplyRule]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoReplyRule)
                .where(AutoReplyRule.device_id == device_id, AutoReplyRule.is_active.is_(True))
                .order_by(AutoReplyRule.priority.desc(), AutoReplyRule.id.asc())
            )
            return list(result.scalars().all())

    async def list_rules(self, device_id: str) -> list[AutoReplyRule]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoReplyRule)
                .where(AutoReplyRule.device_id == device_id)
                .order_by(AutoReplyRule.priority.desc(), AutoReplyRule.id.asc())
            )
            return list(result.scalars().all())

    async def count_active_rules(self, device_id: str) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(AutoReplyRule)
                .where(AutoReplyRule.device_id == device_id, AutoReplyRule.is_active.is_(True))
            )
            return count or 0

    async def get_rule(self, device_id: str, rule_id: int) -> Optional[AutoReplyRule]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoReplyRule).where(
                    AutoReplyRule.id == rule_id, AutoReplyRule.device_id == device_id
                )
            )
            return result.scalar_one_or_none()

    async def create_rule(self, device_id: str, data: dict[str, Any]) -> AutoReplyRule:
        cleaned = _validate_rule_fields(data, partial=False)
        cleaned.setdefault("match_type", MatchType.CONTAINS)
        _check_regex(cleaned["match_type"], cleaned["trigger"])

        rule = AutoReplyRule(device_id=device_id, **cleaned)
        async with self._session_factory() as session:
            session.add(rule)
            await session.commit()
            await session.refresh(rule)

        logger.info(
            "Auto reply rule created",
            extra_data={"device_id": device_id, "rule_id": rule.id, "match_type": rule.match_type.value},
        )
        return rule

    async def update_rule(self, device_id: str, rule_id: int, data: dict[str, Any]) -> AutoReplyRule:
        cleaned = _validate_rule_fields(data, partial=True)

        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoReplyRule).where(
                    AutoReplyRule.id == rule_id, AutoReplyRule.device_id == device_id
                )
            )
            rule = result.scalar_one_or_none()
            if rule is None:
                raise RuleNotFoundException(rule_id)

            # ה-regex נבדק מול הערכים אחרי העדכון - גם כששינו רק את סוג ההתאמה
            _check_regex(
                cleaned.get("match_type", rule.match_type),
                cleaned.get("trigger", rule.trigger),
            )
            for field, value in cleaned.items():
                setattr(rule, field, value)

            await session.commit()
            await session.refresh(rule)

        logger.info(
            "Auto reply rule updated",
            extra_data={"device_id": device_id, "rule_id": rule_id, "fields": sorted(cleaned)},
        )
        return rule

    async def delete_rule(self, device_id: str, rule_id: int) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoReplyRule).where(
                    AutoReplyRule.id == rule_id, AutoReplyRule.device_id == device_id
                )
            )
            rule = result.scalar_one_or_none()
            if rule is None:
                raise RuleNotFoundException(rule_id)
            await session.delete(rule)
            await session.commit()

        logger.info("Auto reply rule deleted", extra_data={"device_id": device_id, "rule_id": rule_id})
