"""
Handoff Service - העברת שיחה לנציג אנושי והחזרה לבוט

זיהוי כוונה: חיפוש תת-מחרוזת ללא תלות ברישיות מול רשימות מילות המפתח
של המכשיר. ההתאמה הראשונה מכריעה.

initiate_handoff / resume_bot הם כתיבה מוחלטת של מצב - קריאה חוזרת
כשהשיחה כבר במצב היעד פשוט כותבת שוב את אותו מצב.
"""
from dataclasses import dataclass
from typing import Any, Optional

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.bot_action_log import BotActionType
from app.domain.services.bot_action_log_service import BotActionLogService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.conversation_state_service import (
    ConversationStateService,
    ConversationStatus,
)

logger = get_logger(__name__)

RESUMED_BY_USER = "user"
RESUMED_BY_ADMIN = "admin"


@dataclass(frozen=True)
class HandoffResult:
    success: bool
    message: Optional[str] = None


def find_keyword(text: Optional[str], keywords: Optional[list[str]]) -> Optional[str]:
    """מילת המפתח הראשונה שמופיעה בטקסט, או None"""
    if not text or not keywords:
        return None
    lowered = text.lower().strip()
    for keyword in keywords:
        if keyword and keyword.lower() in lowered:
            return keyword
    return None


class HandoffService:
    """Escalation to a human operator and the way back to the bot"""

    def __init__(
        self,
        state_service: ConversationStateService,
        config_service: BotConfigService,
        action_log: BotActionLogService,
        default_handoff_message: str = settings.DEFAULT_HANDOFF_MESSAGE,
        default_resume_message: str = settings.DEFAULT_RESUME_MESSAGE,
    ):
        self._state = state_service
        self._configs = config_service
        self._action_log = action_log
        self._default_handoff_message = default_handoff_message
        self._default_resume_message = default_resume_message

    async def _config(self, device_id: str, config: Any) -> Any:
        if config is not None:
            return config
        return await self._configs.get_config(device_id)

    async def detect_escalation(self, device_id: str, text: str, config: Any = None) -> bool:
        try:
            config = await self._config(device_id, config)
            keyword = find_keyword(text, config.handoff_keywords if config else None)
        except Exception:
            logger.error("Error detecting escalation", extra_data={"device_id": device_id}, exc_info=True)
            return False

        if keyword is None:
            return False
        logger.info("Escalation keyword detected", extra_data={"device_id": device_id, "keyword": keyword})
        return True

    async def detect_resume_intent(self, device_id: str, text: str, config: Any = None) -> bool:
        try:
            config = await self._config(device_id, config)
            keyword = find_keyword(text, config.resume_keywords if config else None)
        except Exception:
            logger.error("Error detecting resume intent", extra_data={"device_id": device_id}, exc_info=True)
            return False

        if keyword is None:
            return False
        logger.info("Resume keyword detected", extra_data={"device_id": device_id, "keyword": keyword})
        return True

    async def initiate_handoff(
        self,
        device_id: str,
        sender_jid: str,
        reason: str = "keyword",
        config: Any = None,
        incoming_message: Optional[str] = None,
    ) -> HandoffResult:
        """מעבר ל-HANDOFF. הודעה חוזרת רק אם המצב נשמר בפועל."""
        try:
            stored = await self._state.set(
                device_id, sender_jid, ConversationStatus.HANDOFF, {}, handoff_reason=reason
            )
            if not stored:
                return HandoffResult(success=False)

            config = await self._config(device_id, config)
            message = (config.handoff_message if config else None) or self._default_handoff_message

            await self._action_log.log_action(
                device_id,
                sender_jid,
                BotActionType.HANDOFF_INITIATED,
                incoming_message=incoming_message,
                response_message=message,
                details={"reason": reason},
            )
        except Exception:
            logger.error(
                "Error initiating handoff",
                extra_data={"device_id": device_id, "sender_jid": sender_jid},
                exc_info=True,
            )
            return HandoffResult(success=False)

        logger.info(
            "Handoff initiated",
            extra_data={"device_id": device_id, "sender_jid": sender_jid, "reason": reason},
        )
        return HandoffResult(success=True, message=message)

    async def resume_bot(
        self,
        device_id: str,
        sender_jid: str,
        resumed_by: str = RESUMED_BY_ADMIN,
        config: Any = None,
        incoming_message: Optional[str] = None,
    ) -> HandoffResult:
        try:
            stored = await self._state.set(device_id, sender_jid, ConversationStatus.IDLE, {})
            if not stored:
                return HandoffResult(success=False)

            config = await self._config(device_id, config)
            message = (config.resume_message if config else None) or self._default_resume_message

            await self._action_log.log_action(
                device_id,
                sender_jid,
                BotActionType.HANDOFF_RESUMED,
                incoming_message=incoming_message,
                response_message=message,
                details={"resumed_by": resumed_by},
            )
        except Exception:
            logger.error(
                "Error resuming bot",
                extra_data={"device_id": device_id, "sender_jid": sender_jid},
                exc_info=True,
            )
            return HandoffResult(success=False)

        logger.info(
            "Bot resumed",
            extra_data={"device_id": device_id, "sender_jid": sender_jid, "resumed_by": resumed_by},
        )
        return HandoffResult(success=True, message=message)

    async def get_active_handoffs(self, device_id: str) -> list[dict[str, Any]]:
        records = await self._state.list_handoffs(device_id)
        return [
            {
                "sender_jid": record.sender_jid,
                "phone_number": record.sender_jid.split("@")[0],
                "handoff_at": record.handoff_at,
                "reason": record.handoff_reason,
                "last_activity": record.last_activity,
            }
            for record in records
        ]

    async def get_handoff_count(self, device_id: str) -> int:
        stats = await self._state.stats(device_id)
        return stats["handoff"]
