"""
Bot Action Log Service - רישום החלטות הבוט ללוג הביקורת

כתיבה best-effort: כשלון בכתיבה נרשם ללוג ולא עוצר את צינור העיבוד.
טקסטים נחתכים לאורך מקסימלי לפני שמירה.
"""
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.db.models.bot_action_log import BotActionLog, BotActionType

logger = get_logger(__name__)


def truncate(text: Optional[str], length: int) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= length else text[:length]


class BotActionLogService:
    """Append-only writer and paged reader for BotActionLog"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        truncate_length: int = 1000,
    ):
        self._session_factory = session_factory
        self._truncate_length = truncate_length

    async def log_action(
        self,
        device_id: str,
        sender_jid: str,
        action_type: BotActionType,
        rule_id: Optional[int] = None,
        incoming_message: Optional[str] = None,
        response_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        try:
            async with self._session_factory() as session:
                session.add(BotActionLog(
                    device_id=device_id,
                    sender_jid=sender_jid,
                    action_type=BotActionType(action_type),
                    rule_id=rule_id,
                    incoming_message=truncate(incoming_message, self._truncate_length),
                    response_message=truncate(response_message, self._truncate_length),
                    details=details,
                ))
                await session.commit()
            return True
        except Exception:
            logger.error(
                "Failed to write bot action log",
                extra_data={
                    "device_id": device_id,
                    "sender_jid": sender_jid,
                    "action_type": str(getattr(action_type, "value", action_type)),
                },
                exc_info=True,
            )
            return False

    async def list_logs(
        self,
        device_id: str,
        limit: int = 50,
        offset: int = 0,
        action_type: Optional[BotActionType] = None,
    ) -> tuple[int, list[BotActionLog]]:
        """(סה"כ, עמוד) - מהחדש לישן"""
        conditions = [BotActionLog.device_id == device_id]
        if action_type is not None:
            conditions.append(BotActionLog.action_type == BotActionType(action_type))

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(BotActionLog).where(*conditions)
            )
            result = await session.execute(
                select(BotActionLog)
                .where(*conditions)
                .order_by(BotActionLog.created_at.desc(), BotActionLog.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return total or 0, list(result.scalars().all())
