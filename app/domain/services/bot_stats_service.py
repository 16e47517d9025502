"""
Bot Stats Service - תמונת מצב של הבוט למכשיר
"""
from typing import Any

from app.domain.services.auto_reply_rule_service import AutoReplyRuleService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.conversation_state_service import ConversationStateService


class BotStatsService:
    def __init__(
        self,
        config_service: BotConfigService,
        rule_service: AutoReplyRuleService,
        state_service: ConversationStateService,
    ):
        self._configs = config_service
        self._rules = rule_service
        self._state = state_service

    async def get_bot_stats(self, device_id: str) -> dict[str, Any]:
        config = await self._configs.get_config(device_id)
        return {
            "bot_enabled": bool(config and config.bot_enabled),
            "active_rules": await self._rules.count_active_rules(device_id),
            "conversations": await self._state.stats(device_id),
        }
