"""
Domain Services
"""
from app.domain.services.safety_guard import SafetyGuard
from app.domain.services.conversation_state_service import ConversationStateService
from app.domain.services.business_hours_service import BusinessHoursService
from app.domain.services.handoff_service import HandoffService
from app.domain.services.auto_reply_service import AutoReplyRuleEngine
from app.domain.services.message_pipeline import MessagePipeline
from app.domain.services.bot_runtime import BotRuntime, build_bot_runtime

__all__ = [
    "SafetyGuard",
    "ConversationStateService",
    "BusinessHoursService",
    "HandoffService",
    "AutoReplyRuleEngine",
    "MessagePipeline",
    "BotRuntime",
    "build_bot_runtime",
]
