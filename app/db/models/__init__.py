"""
Database Models
"""
from app.db.models.device_bot_config import DeviceBotConfig
from app.db.models.auto_reply_rule import AutoReplyRule, MatchType
from app.db.models.bot_action_log import BotActionLog, BotActionType

__all__ = [
    "DeviceBotConfig",
    "AutoReplyRule",
    "MatchType",
    "BotActionLog",
    "BotActionType",
]
