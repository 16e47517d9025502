"""
Message Pipeline - החלטה על גורלה של הודעה נכנסת אחת

סדר השלבים קבוע, והשלב הראשון שמכריע עוצר את השאר:
1. הגדרות מכשיר - אין הגדרה או בוט כבוי → לא עושים כלום (בשקט)
2. Safety Guard - דחייה מחזירה את הסיבה; רק rate_limited נרשם ללוג הביקורת
3. קריאת מצב השיחה
4. HANDOFF - רק מילת חזרה לבוט מעניינת; אחרת in_handoff ולא ממשיכים
5. מילת הסלמה → העברה לנציג
6. מחוץ לשעות פעילות עם הודעה מוגדרת → תשובת off-hours
7. התאמת חוקים → תשובה, ACTIVE_BOT, cooldown
8. אין התאמה → no_match

כל חריגה לא צפויה נתפסת בגבול הצינור ומחזירה (False, None) - המקור של
ההודעה אף פעם לא מקבל שגיאה.
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.core.logging import get_logger, preview, set_correlation_id
from app.db.models.bot_action_log import BotActionType
from app.domain.services.auto_reply_rule_service import AutoReplyRuleService
from app.domain.services.auto_reply_service import AutoReplyRuleEngine
from app.domain.services.bot_action_log_service import BotActionLogService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.business_hours_service import BusinessHoursService
from app.domain.services.conversation_state_service import (
    ConversationStateService,
    ConversationStatus,
)
from app.domain.services.handoff_service import RESUMED_BY_USER, HandoffService
from app.domain.services.message_template import render, sender_bindings
from app.domain.services.safety_guard import RejectReason, SafetyGuard

logger = get_logger(__name__)

# send(sender_jid, text) - מסופק ע"י שכבת התעבורה
SendFn = Callable[[str, str], Awaitable[Any]]


class PipelineAction(str, enum.Enum):
    RESUMED_BY_USER = "resumed_by_user"
    IN_HANDOFF = "in_handoff"
    HANDOFF_INITIATED = "handoff_initiated"
    OFF_HOURS_REPLY = "off_hours_reply"
    RULE_MATCHED = "rule_matched"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class PipelineResult:
    processed: bool
    action: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    device_id: str
    sender_jid: str
    text: str
    message_id: Optional[str] = None
    from_me: bool = False


_SILENT = PipelineResult(processed=False, action=None)


class MessagePipeline:
    """Orchestrates one inbound message through every decision stage"""

    def __init__(
        self,
        safety_guard: SafetyGuard,
        state_service: ConversationStateService,
        config_service: BotConfigService,
        rule_service: AutoReplyRuleService,
        rule_engine: AutoReplyRuleEngine,
        handoff_service: HandoffService,
        business_hours: BusinessHoursService,
        action_log: BotActionLogService,
        lookup_timeout_seconds: float = 5.0,
    ):
        self.safety_guard = safety_guard
        self.state = state_service
        self.configs = config_service
        self.rules = rule_service
        self.rule_engine = rule_engine
        self.handoff = handoff_service
        self.business_hours = business_hours
        self.action_log = action_log
        self._lookup_timeout = lookup_timeout_seconds

    async def handle(self, message: InboundMessage, send: SendFn) -> PipelineResult:
        return await self.process_incoming(
            message.device_id,
            message.sender_jid,
            message.text,
            message.message_id,
            send,
            from_me=message.from_me,
        )

    async def process_incoming(
        self,
        device_id: str,
        sender_jid: str,
        text: str,
        message_id: Optional[str],
        send: SendFn,
        *,
        from_me: bool = False,
    ) -> PipelineResult:
        set_correlation_id(message_id or None)
        try:
            return await self._decide(device_id, sender_jid, text or "", message_id, send, from_me)
        except Exception:
            logger.error(
                "Error processing incoming message",
                extra_data={"device_id": device_id, "sender_jid": sender_jid},
                exc_info=True,
            )
            return _SILENT

    async def _reply(self, device_id: str, sender_jid: str, template: str, send: SendFn) -> str:
        """שליחה בפועל + קידום חלון הגבלת הקצב"""
        text = render(template, sender_bindings(device_id, sender_jid))
        await send(sender_jid, text)
        self.safety_guard.record_auto_reply(device_id, sender_jid)
        return text

    async def _decide(
        self,
        device_id: str,
        sender_jid: str,
        text: str,
        message_id: Optional[str],
        send: SendFn,
        from_me: bool,
    ) -> PipelineResult:
        config = await asyncio.wait_for(self.configs.get_config(device_id), timeout=self._lookup_timeout)
        if config is None or not config.bot_enabled:
            return _SILENT

        ignore_groups = True if config.ignore_groups is None else bool(config.ignore_groups)
        decision = self.safety_guard.should_process(
            device_id, sender_jid, message_id, from_me, ignore_groups=ignore_groups
        )
        if not decision.allowed:
            if decision.reason == RejectReason.RATE_LIMITED.value:
                await self.action_log.log_action(
                    device_id, sender_jid, BotActionType.RATE_LIMITED, incoming_message=text
                )
            return PipelineResult(False, decision.reason)

        current = await self.state.get(device_id, sender_jid)

        # בזמן HANDOFF אף שלב אחר לא רץ - שיחה אצל נציג לא מקבלת תשובת בוט
        if current is not None and current.state == ConversationStatus.HANDOFF:
            if not await self.handoff.detect_resume_intent(device_id, text, config=config):
                return PipelineResult(False, PipelineAction.IN_HANDOFF.value)

            result = await self.handoff.resume_bot(
                device_id, sender_jid, RESUMED_BY_USER, config=config, incoming_message=text
            )
            if not result.success:
                return _SILENT
            if result.message:
                await self._reply(device_id, sender_jid, result.message, send)
            return PipelineResult(True, PipelineAction.RESUMED_BY_USER.value)

        if await self.handoff.detect_escalation(device_id, text, config=config):
            result = await self.handoff.initiate_handoff(
                device_id, sender_jid, "escalation_keyword", config=config, incoming_message=text
            )
            # המצב לא נשמר - לא מבטיחים לשולח נציג שלא יגיע
            if not result.success:
                return _SILENT
            if result.message:
                await self._reply(device_id, sender_jid, result.message, send)
            return PipelineResult(True, PipelineAction.HANDOFF_INITIATED.value)

        hours = await self.business_hours.check_business_hours(device_id, config=config)
        if not hours.is_business_hours and hours.off_hours_message:
            sent = await self._reply(device_id, sender_jid, hours.off_hours_message, send)
            await self.action_log.log_action(
                device_id,
                sender_jid,
                BotActionType.OFF_HOURS_REPLY,
                incoming_message=text,
                response_message=sent,
            )
            logger.info("Off-hours reply sent", extra_data={"device_id": device_id, "sender_jid": sender_jid})
            return PipelineResult(True, PipelineAction.OFF_HOURS_REPLY.value)

        rules = await asyncio.wait_for(self.rules.list_active_rules(device_id), timeout=self._lookup_timeout)
        rule = await self.rule_engine.match_rules(device_id, text, sender_jid, rules=rules)
        if rule is not None:
            sent = await self._reply(device_id, sender_jid, rule.response, send)
            await self.state.set(
                device_id, sender_jid, ConversationStatus.ACTIVE_BOT, {"lastMatchedRule": rule.id}
            )
            self.rule_engine.record_rule_cooldown(device_id, sender_jid, rule.id, rule.cooldown_seconds)
            await self.action_log.log_action(
                device_id,
                sender_jid,
                BotActionType.AUTO_REPLY,
                rule_id=rule.id,
                incoming_message=text,
                response_message=sent,
            )
            return PipelineResult(True, PipelineAction.RULE_MATCHED.value)

        await self.action_log.log_action(device_id, sender_jid, BotActionType.NO_MATCH, incoming_message=text)
        logger.debug(
            "No rule matched",
            extra_data={"device_id": device_id, "text_preview": preview(text)},
        )
        return PipelineResult(False, PipelineAction.NO_MATCH.value)
