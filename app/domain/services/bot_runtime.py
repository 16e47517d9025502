"""
Bot Runtime - הרכבת כל רכיבי הבוט במקום אחד

אין singletons ברמת מודול: כל רכיב נבנה כאן במפורש ומוזרק למי שצריך
אותו, כך שבדיקות (ותהליכים עם כמה מופעים) מקבלים מצב נפרד לגמרי.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.config import Settings, settings
from app.core.kv_store import FailoverKeyValueStore, InMemoryKeyValueStore, RedisKeyValueStore
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal
from app.domain.services.auto_reply_rule_service import AutoReplyRuleService
from app.domain.services.auto_reply_service import AutoReplyRuleEngine
from app.domain.services.bot_action_log_service import BotActionLogService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.bot_stats_service import BotStatsService
from app.domain.services.business_hours_service import BusinessHoursService
from app.domain.services.conversation_state_service import ConversationStateService
from app.domain.services.handoff_service import HandoffService
from app.domain.services.message_pipeline import MessagePipeline
from app.domain.services.safety_guard import SafetyGuard, SafetyGuardConfig
from app.workers.sweeper import PeriodicSweeper

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BotRuntime:
    state_store: FailoverKeyValueStore
    state_store_breaker: CircuitBreaker
    safety_guard: SafetyGuard
    state_service: ConversationStateService
    config_service: BotConfigService
    rule_service: AutoReplyRuleService
    rule_engine: AutoReplyRuleEngine
    action_log: BotActionLogService
    business_hours: BusinessHoursService
    handoff: HandoffService
    stats: BotStatsService
    pipeline: MessagePipeline
    sweeper: PeriodicSweeper

    async def reset_conversation(self, device_id: str, sender_jid: str) -> bool:
        """איפוס מנהלתי - השיחה חוזרת להיות IDLE (נמחקת)"""
        return await self.state_service.clear(device_id, sender_jid)

    async def resume_conversation(self, device_id: str, sender_jid: str) -> bool:
        """החזרת שיחה לבוט ע"י מנהל. לא שולח הודעה - זה באחריות שכבת התעבורה."""
        result = await self.handoff.resume_bot(device_id, sender_jid, resumed_by="admin")
        return result.success


def build_bot_runtime(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
    cfg: Settings = settings,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = _utcnow,
) -> BotRuntime:
    """
    clock - שעון מונוטוני לחלונות (rate limit, dedup, cooldown, תפוגה מקומית)
    now - שעון קיר לשעות פעילות ולחותמות זמן של מצבי שיחה
    """
    breaker = CircuitBreaker(
        "state_store",
        CircuitBreakerConfig(
            failure_threshold=cfg.STATE_STORE_FAILURE_THRESHOLD,
            timeout_seconds=cfg.STATE_STORE_RETRY_SECONDS,
        ),
        clock=clock,
    )
    store = FailoverKeyValueStore(
        primary=RedisKeyValueStore(redis_factory, timeout_seconds=cfg.STATE_STORE_TIMEOUT_SECONDS),
        fallback=InMemoryKeyValueStore(clock),
        breaker=breaker,
    )

    safety_guard = SafetyGuard(
        SafetyGuardConfig(
            max_replies_per_window=cfg.BOT_RATE_LIMIT_PER_MINUTE,
            rate_limit_window_seconds=cfg.BOT_RATE_LIMIT_WINDOW_SEC,
            dedup_ttl_seconds=cfg.BOT_DEDUP_TTL_SECONDS,
        ),
        clock=clock,
    )
    state_service = ConversationStateService(
        store,
        key_prefix=cfg.CONVERSATION_KEY_PREFIX,
        default_ttl_seconds=cfg.CONVERSATION_STATE_TTL_SECONDS,
        handoff_ttl_seconds=cfg.CONVERSATION_HANDOFF_TTL_SECONDS,
        now=now,
    )
    config_service = BotConfigService(session_factory)
    rule_service = AutoReplyRuleService(session_factory)
    rule_engine = AutoReplyRuleEngine(
        rule_service, clock=clock, retention_seconds=cfg.BOT_RULE_COOLDOWN_RETENTION_SECONDS
    )
    action_log = BotActionLogService(session_factory, truncate_length=cfg.BOT_LOG_TRUNCATE_LENGTH)
    business_hours = BusinessHoursService(config_service, now=now)
    handoff = HandoffService(
        state_service,
        config_service,
        action_log,
        default_handoff_message=cfg.DEFAULT_HANDOFF_MESSAGE,
        default_resume_message=cfg.DEFAULT_RESUME_MESSAGE,
    )
    pipeline = MessagePipeline(
        safety_guard=safety_guard,
        state_service=state_service,
        config_service=config_service,
        rule_service=rule_service,
        rule_engine=rule_engine,
        handoff_service=handoff,
        business_hours=business_hours,
        action_log=action_log,
        lookup_timeout_seconds=cfg.BOT_LOOKUP_TIMEOUT_SECONDS,
    )

    sweeper = PeriodicSweeper()
    sweeper.register("safety_guard", safety_guard.sweep, cfg.SAFETY_SWEEP_INTERVAL_SECONDS)
    sweeper.register("state_fallback", store.sweep_expired, cfg.STATE_SWEEP_INTERVAL_SECONDS)
    sweeper.register("rule_cooldowns", rule_engine.sweep_cooldowns, cfg.COOLDOWN_SWEEP_INTERVAL_SECONDS)

    logger.info("Bot runtime built", extra_data={"sweep_jobs": list(sweeper.jobs)})
    return BotRuntime(
        state_store=store,
        state_store_breaker=breaker,
        safety_guard=safety_guard,
        state_service=state_service,
        config_service=config_service,
        rule_service=rule_service,
        rule_engine=rule_engine,
        action_log=action_log,
        business_hours=business_hours,
        handoff=handoff,
        stats=BotStatsService(config_service, rule_service, state_service),
        pipeline=pipeline,
        sweeper=sweeper,
    )
