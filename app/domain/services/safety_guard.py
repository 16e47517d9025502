"""
Safety Guard - הגנות נגד לולאות והצפה לפני כל תשובה אוטומטית

בדיקות לפי סדר קבוע (הבדיקה הראשונה שנכשלת קובעת):
1. הודעה שלנו (fromMe) - אף פעם לא עונים לעצמנו
2. שולח ברשימת התעלמות - סטטוס/broadcast, או קבוצה כשהמכשיר מתעלם מקבוצות
3. בוט מוכר - לא עונים לבוטים אחרים
4. כפילות - message_id שכבר התקבל בחלון האחרון
5. הגבלת קצב - השולח מיצה את תקציב התשובות בחלון הזמן

המצב נשמר במפות בזיכרון ללא נעילה. זה בטוח רק כשכל הקריאות רצות על
event loop יחיד - בהרצה מרובת threads צריך לעטוף את המפות בנעילה.
"""
from __future__ import annotations

import enum
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)

STATUS_BROADCAST_JID = "status@broadcast"
BROADCAST_SUFFIX = "@broadcast"
GROUP_SUFFIX = "@g.us"


class RejectReason(str, enum.Enum):
    OWN_MESSAGE = "own_message"
    IGNORE_PATTERN = "ignore_pattern"
    KNOWN_BOT = "known_bot"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass(frozen=True)
class SafetyDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class SafetyGuardConfig:
    max_replies_per_window: int = 5
    rate_limit_window_seconds: float = 60.0
    dedup_ttl_seconds: float = 300.0


@dataclass(frozen=True)
class RateLimitStatus:
    count: int
    remaining: int
    reset_in: float


_ALLOWED = SafetyDecision(allowed=True)


class SafetyGuard:
    """Decides whether an inbound message may be processed at all"""

    def __init__(
        self,
        config: SafetyGuardConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SafetyGuardConfig()
        self._clock = clock
        # message_id → זמן קבלה
        self._recent_messages: dict[str, float] = {}
        # (device_id, sender_jid) → זמני תשובות שנשלחו, בסדר עולה
        self._reply_timestamps: dict[tuple[str, str], list[float]] = defaultdict(list)
        self._known_bots: set[str] = set()

        logger.info(
            "SafetyGuard configured",
            extra_data={
                "max_replies": self.config.max_replies_per_window,
                "window_seconds": self.config.rate_limit_window_seconds,
            },
        )

    def should_process(
        self,
        device_id: str,
        sender_jid: str,
        message_id: Optional[str],
        from_me: bool,
        ignore_groups: bool = True,
    ) -> SafetyDecision:
        """בדיקת כל ההגנות. כל שגיאה פנימית נחשבת דחייה (fail-closed)."""
        try:
            if from_me:
                return SafetyDecision(False, RejectReason.OWN_MESSAGE.value)

            if self._matches_ignore_pattern(sender_jid, ignore_groups):
                return SafetyDecision(False, RejectReason.IGNORE_PATTERN.value)

            if sender_jid in self._known_bots:
                return SafetyDecision(False, RejectReason.KNOWN_BOT.value)

            if message_id and message_id in self._recent_messages:
                return SafetyDecision(False, RejectReason.DUPLICATE.value)

            if self._is_rate_limited(device_id, sender_jid):
                logger.debug(
                    "Rate limit reached",
                    extra_data={"device_id": device_id, "sender_jid": sender_jid},
                )
                return SafetyDecision(False, RejectReason.RATE_LIMITED.value)

            # נרשם לכפילויות רק במסלול המאושר
            if message_id:
                self._recent_messages[message_id] = self._clock()
            return _ALLOWED
        except Exception:
            logger.error(
                "SafetyGuard check failed",
                extra_data={"device_id": device_id, "sender_jid": sender_jid},
                exc_info=True,
            )
            return SafetyDecision(False, RejectReason.ERROR.value)

    def record_auto_reply(self, device_id: str, sender_jid: str) -> None:
        """רישום תשובה שנשלחה בפועל - מקדם את חלון הגבלת הקצב"""
        self._reply_timestamps[(device_id, sender_jid)].append(self._clock())

    def add_known_bot(self, jid: str) -> None:
        self._known_bots.add(jid)
        logger.info("Added known bot to ignore list", extra_data={"jid": jid})

    def remove_known_bot(self, jid: str) -> None:
        self._known_bots.discard(jid)
        logger.info("Removed known bot from ignore list", extra_data={"jid": jid})

    def get_rate_limit_status(self, device_id: str, sender_jid: str) -> RateLimitStatus:
        now = self._clock()
        window = self.config.rate_limit_window_seconds
        in_window = self._timestamps_in_window(device_id, sender_jid, now)

        count = len(in_window)
        oldest = in_window[0] if in_window else now
        return RateLimitStatus(
            count=count,
            remaining=max(0, self.config.max_replies_per_window - count),
            reset_in=max(0.0, window - (now - oldest)),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "tracked_messages": len(self._recent_messages),
            "tracked_senders": len(self._reply_timestamps),
            "known_bots": len(self._known_bots),
            "config": {
                "max_replies_per_window": self.config.max_replies_per_window,
                "rate_limit_window_seconds": self.config.rate_limit_window_seconds,
                "dedup_ttl_seconds": self.config.dedup_ttl_seconds,
            },
        }

    def sweep(self) -> dict[str, int]:
        """ניקוי תקופתי של message_id ישנים ושל שולחים שהחלון שלהם התרוקן"""
        now = self._clock()
        dedup_ttl = self.config.dedup_ttl_seconds
        window = self.config.rate_limit_window_seconds

        stale_messages = [
            message_id for message_id, seen_at in self._recent_messages.items()
            if now - seen_at > dedup_ttl
        ]
        for message_id in stale_messages:
            del self._recent_messages[message_id]

        emptied = 0
        for key in list(self._reply_timestamps):
            valid = [ts for ts in self._reply_timestamps[key] if now - ts < window]
            if valid:
                self._reply_timestamps[key] = valid
            else:
                del self._reply_timestamps[key]
                emptied += 1

        if stale_messages or emptied:
            logger.debug(
                "SafetyGuard sweep",
                extra_data={"messages": len(stale_messages), "senders": emptied},
            )
        return {"messages": len(stale_messages), "senders": emptied}

    def _matches_ignore_pattern(self, sender_jid: str, ignore_groups: bool) -> bool:
        if sender_jid == STATUS_BROADCAST_JID or sender_jid.endswith(BROADCAST_SUFFIX):
            return True
        return ignore_groups and sender_jid.endswith(GROUP_SUFFIX)

    def _timestamps_in_window(self, device_id: str, sender_jid: str, now: float) -> list[float]:
        timestamps = self._reply_timestamps.get((device_id, sender_jid), [])
        window = self.config.rate_limit_window_seconds
        return [ts for ts in timestamps if now - ts < window]

    def _is_rate_limited(self, device_id: str, sender_jid: str) -> bool:
        in_window = self._timestamps_in_window(device_id, sender_jid, self._clock())
        return len(in_window) >= self.config.max_replies_per_window
