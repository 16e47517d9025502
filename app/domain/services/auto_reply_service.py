"""
Auto Reply Service - מנוע התאמת חוקים לפי עדיפות

החוקים הפעילים של המכשיר נבדקים מהעדיפות הגבוהה לנמוכה (שוויון נשמר
לפי סדר הטעינה). חוק שנמצא ב-cooldown עבור השולח מדולג. החוק הראשון
שמתאים מנצח והבדיקה נעצרת.

חוקי regex רצים דרך ספריית regex עם timeout קשיח לכל התאמה, כך שתבנית
שחמקה מהבדיקה בזמן הכתיבה לא תוקעת את ה-event loop.

מצב ה-cooldown נשמר במפה בזיכרון ללא נעילה - בטוח על event loop יחיד.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Optional, TYPE_CHECKING

import regex

from app.core.logging import get_logger, preview
from app.db.models.auto_reply_rule import MatchType

if TYPE_CHECKING:
    from app.domain.services.auto_reply_rule_service import AutoReplyRuleService

logger = get_logger(__name__)

# אורך מקסימלי של טקסט שמוזן למנוע ה-regex
MAX_REGEX_INPUT_LENGTH = 4096
# זמן מקסימלי להתאמת regex אחת; חריגה = אין התאמה
REGEX_TIMEOUT_SECONDS = 0.1

_REPEAT_AFTER_GROUP = "+*{"

# class עם כמת כפול: [a-z]++ / ([a-z])**
_DOUBLED_QUANTIFIER = re.compile(r"\[[^\]]*\]\)?[+*]{2}")


@dataclass(frozen=True)
class RegexValidation:
    valid: bool
    error: Optional[str] = None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> regex.Pattern:
    return regex.compile(pattern, regex.IGNORECASE)


def _skip_class(pattern: str, start: int) -> int:
    """אינדקס אחרי ה-] שסוגר את ה-class שנפתח ב-start"""
    i = start + 1
    if i < len(pattern) and pattern[i] == "^":
        i += 1
    if i < len(pattern) and pattern[i] == "]":
        i += 1
    while i < len(pattern) and pattern[i] != "]":
        if pattern[i] == "\\":
            i += 1
        i += 1
    return i + 1


def has_nested_repetition(pattern: str) -> bool:
    """
    Does a repeated group contain its own quantifier or an alternation?

    Catches (a+)+, (\\w+\\s?)+, (.*)* and (a|aa)+ style triggers, the shapes
    that backtrack exponentially on a near-miss.
    """
    # לכל קבוצה פתוחה: האם יש בתוכה כמת או |
    groups: list[bool] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            i = _skip_class(pattern, i)
            continue
        if ch == "(":
            groups.append(False)
            i += 1
            # (?: / (?P<name> / (?i) - ה-? כאן אינו כמת
            if i < len(pattern) and pattern[i] == "?":
                i += 1
            continue
        if ch == ")":
            risky = groups.pop() if groups else False
            i += 1
            if risky and i < len(pattern) and pattern[i] in _REPEAT_AFTER_GROUP:
                return True
            if risky and groups:
                groups[-1] = True
            continue
        if ch in "+*?{|" and groups:
            groups[-1] = True
        i += 1
    return False


def _match_type_value(rule: Any) -> str:
    return getattr(rule.match_type, "value", rule.match_type)


def match_rule(rule: Any, lower_text: str, original_text: str) -> bool:
    """
    Does a single rule match?

    ``lower_text`` is the trimmed, lowercased message; regex triggers run
    case-insensitively against ``original_text``. An invalid pattern, or one
    that exceeds the evaluation timeout, is a non-match.
    """
    match_type = _match_type_value(rule)
    trigger = (rule.trigger or "").lower()

    if match_type == MatchType.EXACT.value:
        return lower_text == trigger.strip()
    if match_type == MatchType.CONTAINS.value:
        return trigger in lower_text
    if match_type == MatchType.STARTS_WITH.value:
        return lower_text.startswith(trigger)
    if match_type == MatchType.REGEX.value:
        try:
            compiled = _compile(rule.trigger)
            found = compiled.search(
                original_text[:MAX_REGEX_INPUT_LENGTH], timeout=REGEX_TIMEOUT_SECONDS
            )
            return found is not None
        except TimeoutError:
            logger.warning(
                "Regex evaluation timed out",
                extra_data={"rule_id": getattr(rule, "id", None), "timeout": REGEX_TIMEOUT_SECONDS},
            )
            return False
        except (regex.error, TypeError, RecursionError) as e:
            logger.warning(
                "Invalid regex in rule",
                extra_data={"rule_id": getattr(rule, "id", None), "error": str(e)},
            )
            return False
    return False


def validate_regex(pattern: str) -> RegexValidation:
    """בדיקה בזמן כתיבת חוק - לא בכל הודעה"""
    if not isinstance(pattern, str) or not pattern:
        return RegexValidation(False, "Pattern must be a non-empty string")

    if has_nested_repetition(pattern) or _DOUBLED_QUANTIFIER.search(pattern):
        return RegexValidation(False, "Pattern may cause performance issues")

    try:
        regex.compile(pattern, regex.IGNORECASE)
    except regex.error as e:
        return RegexValidation(False, str(e))
    return RegexValidation(True)


class AutoReplyRuleEngine:
    """Priority matching with per-(device, sender, rule) cooldowns"""

    def __init__(
        self,
        rule_service: Optional["AutoReplyRuleService"] = None,
        clock: Callable[[], float] = time.monotonic,
        retention_seconds: float = 3600,
    ):
        self._rules = rule_service
        self._clock = clock
        self._retention = retention_seconds
        # (device_id, sender_jid, rule_id) → (זמן הפעלה, cooldown בשניות)
        self._cooldowns: dict[tuple[str, str, int], tuple[float, float]] = {}

    async def match_rules(
        self,
        device_id: str,
        text: str,
        sender_jid: str,
        rules: Optional[list[Any]] = None,
    ) -> Optional[Any]:
        """החוק המנצח או None. שגיאה בטעינה או בהתאמה = אין התאמה."""
        try:
            if rules is None:
                rules = await self._rules.list_active_rules(device_id)

            ordered = sorted(
                (rule for rule in rules if getattr(rule, "is_active", True)),
                key=lambda rule: -(rule.priority or 0),
            )
            lower_text = (text or "").lower().strip()

            for rule in ordered:
                if self.is_rule_on_cooldown(device_id, sender_jid, rule.id, rule.cooldown_seconds):
                    continue
                if match_rule(rule, lower_text, text or ""):
                    logger.info(
                        "Rule matched",
                        extra_data={
                            "device_id": device_id,
                            "rule_id": rule.id,
                            "rule_name": rule.name,
                            "text_preview": preview(text),
                        },
                    )
                    return rule
            return None
        except Exception:
            logger.error("Error matching rules", extra_data={"device_id": device_id}, exc_info=True)
            return None

    def is_rule_on_cooldown(
        self,
        device_id: str,
        sender_jid: str,
        rule_id: int,
        cooldown_seconds: Optional[float],
    ) -> bool:
        if not cooldown_seconds:
            return False
        entry = self._cooldowns.get((device_id, sender_jid, rule_id))
        if entry is None:
            return False
        fired_at, _ = entry
        return self._clock() - fired_at < cooldown_seconds

    def record_rule_cooldown(
        self,
        device_id: str,
        sender_jid: str,
        rule_id: int,
        cooldown_seconds: float = 0,
    ) -> None:
        self._cooldowns[(device_id, sender_jid, rule_id)] = (self._clock(), float(cooldown_seconds or 0))

    def sweep_cooldowns(self) -> int:
        """מחיקת רשומות cooldown ישנות. רשומה נשמרת לפחות כל עוד ה-cooldown שלה בתוקף."""
        now = self._clock()
        stale = [
            key for key, (fired_at, cooldown) in self._cooldowns.items()
            if now - fired_at > max(self._retention, cooldown)
        ]
        for key in stale:
            del self._cooldowns[key]
        if stale:
            logger.debug(
                "Rule cooldown sweep",
                extra_data={"removed": len(stale), "remaining": len(self._cooldowns)},
            )
        return len(stale)

    def __len__(self) -> int:
        return len(self._cooldowns)
