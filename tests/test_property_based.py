"""
בדיקות property-based עם hypothesis לשכבות ההחלטה.

בודקים אינווריאנטים על:
1. בחירת חוק לפי עדיפות - החוק המנצח תמיד הראשון המתאים בסדר יציב
2. ולידציה של שעות פעילות - קלט תקין מתקבל, חלון הפוך נדחה
3. שער הבטיחות - הודעות של הבוט עצמו וקבוצות לעולם לא עוברות
4. תבניות הודעה - טקסט בלי placeholders לא משתנה
"""
import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import (
    booleans,
    composite,
    integers,
    lists,
    none,
    one_of,
    sampled_from,
    text,
    tuples,
)

from app.domain.services.auto_reply_service import AutoReplyRuleEngine
from app.domain.services.business_hours_service import (
    is_within_schedule,
    validate_business_hours,
    weekday_sunday_first,
)
from app.domain.services.message_template import render
from app.domain.services.safety_guard import SafetyGuard

_rule_ids = itertools.count(1)


# ============================================================================
# אסטרטגיות (strategies)
# ============================================================================

TRIGGERS = sampled_from(["menu", "price", "hours", "hello"])

# (priority, trigger) לכל חוק
RULE_SPECS = lists(tuples(integers(min_value=-5, max_value=5), TRIGGERS), min_size=0, max_size=8)

MESSAGE_WORDS = lists(sampled_from(["menu", "price", "hours", "hello", "thanks", "שלום"]), max_size=4)


def _hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@composite
def schedule_entry(draw):
    """חלון תקין: start < end באותו יום"""
    start = draw(integers(min_value=0, max_value=23 * 60 + 58))
    end = draw(integers(min_value=start + 1, max_value=23 * 60 + 59))
    return {"day": draw(integers(min_value=0, max_value=6)), "start": _hhmm(start), "end": _hhmm(end)}


@composite
def inverted_entry(draw):
    """חלון שבו start >= end"""
    end = draw(integers(min_value=0, max_value=23 * 60 + 59))
    start = draw(integers(min_value=end, max_value=23 * 60 + 59))
    return {"day": draw(integers(min_value=0, max_value=6)), "start": _hhmm(start), "end": _hhmm(end)}


def _make_rules(specs: list[tuple[int, str]]) -> list[SimpleNamespace]:
    return [
        SimpleNamespace(
            id=next(_rule_ids),
            name=f"rule-{i}",
            trigger=trigger,
            match_type="contains",
            priority=priority,
            cooldown_seconds=0,
            is_active=True,
        )
        for i, (priority, trigger) in enumerate(specs)
    ]


# ============================================================================
# בחירת חוק
# ============================================================================


class TestRuleSelectionProperties:
    @pytest.mark.unit
    @given(specs=RULE_SPECS, words=MESSAGE_WORDS)
    @h_settings(max_examples=100, deadline=None)
    async def test_winner_is_first_match_in_priority_order(self, specs, words):
        """
        אינווריאנט: המנצח הוא החוק הראשון שמתאים כשהחוקים ממוינים
        לפי עדיפות יורדת, ושוויון נשמר לפי סדר הקלט.
        """
        rules = _make_rules(specs)
        message = " ".join(words)
        engine = AutoReplyRuleEngine()

        winner = await engine.match_rules("device", message, "s@s.whatsapp.net", rules=rules)

        ordered = sorted(rules, key=lambda rule: -rule.priority)
        expected = next((rule for rule in ordered if rule.trigger in message.lower()), None)
        assert winner is expected

    @pytest.mark.unit
    @given(specs=RULE_SPECS, words=MESSAGE_WORDS)
    @h_settings(max_examples=50, deadline=None)
    async def test_matching_is_deterministic(self, specs, words):
        rules = _make_rules(specs)
        message = " ".join(words)
        engine = AutoReplyRuleEngine()

        first = await engine.match_rules("device", message, "s@s.whatsapp.net", rules=rules)
        second = await engine.match_rules("device", message, "s@s.whatsapp.net", rules=rules)

        assert first is second


# ============================================================================
# שעות פעילות
# ============================================================================


class TestBusinessHoursProperties:
    @pytest.mark.unit
    @given(schedule=lists(schedule_entry(), max_size=7))
    @h_settings(max_examples=100, deadline=None)
    def test_well_formed_schedules_are_accepted(self, schedule):
        valid, errors = validate_business_hours(schedule)
        assert valid, errors

    @pytest.mark.unit
    @given(good=lists(schedule_entry(), max_size=3), bad=inverted_entry())
    @h_settings(max_examples=100, deadline=None)
    def test_inverted_window_is_rejected(self, good, bad):
        valid, errors = validate_business_hours(good + [bad])
        assert not valid
        assert any("Start time must be before end time" in error for error in errors)

    @pytest.mark.unit
    @given(entry=schedule_entry(), offset_days=integers(min_value=0, max_value=400))
    @h_settings(max_examples=100, deadline=None)
    def test_window_start_is_inside(self, entry, offset_days):
        """רגע תחילת החלון, ביום המתאים, תמיד בתוך שעות הפעילות"""
        # 2024-01-07 הוא יום ראשון
        day = datetime(2024, 1, 7, tzinfo=timezone.utc) + timedelta(days=offset_days)
        hour, minute = map(int, entry["start"].split(":"))
        moment = day.replace(hour=hour, minute=minute)

        assert is_within_schedule([entry], moment) is (weekday_sunday_first(moment) == entry["day"])

    @pytest.mark.unit
    @given(offset_days=integers(min_value=0, max_value=3650))
    @h_settings(max_examples=100, deadline=None)
    def test_weekday_numbering_is_sunday_first(self, offset_days):
        moment = datetime(2024, 1, 7, tzinfo=timezone.utc) + timedelta(days=offset_days)
        assert weekday_sunday_first(moment) == offset_days % 7


# ============================================================================
# שער בטיחות
# ============================================================================


class TestSafetyGateProperties:
    @pytest.mark.unit
    @given(
        sender=text(min_size=1, max_size=40),
        message_id=one_of(none(), text(max_size=20)),
        ignore_groups=booleans(),
    )
    @h_settings(max_examples=100, deadline=None)
    def test_own_messages_never_pass(self, sender, message_id, ignore_groups):
        guard = SafetyGuard()
        decision = guard.should_process("device", sender, message_id, True, ignore_groups)
        assert not decision.allowed
        assert decision.reason == "own_message"

    @pytest.mark.unit
    @given(group_id=text(alphabet="0123456789-", min_size=1, max_size=30))
    @h_settings(max_examples=50, deadline=None)
    def test_groups_rejected_when_ignored(self, group_id):
        guard = SafetyGuard()
        decision = guard.should_process("device", f"{group_id}@g.us", None, False, True)
        assert not decision.allowed
        assert decision.reason == "ignore_pattern"


# ============================================================================
# תבניות
# ============================================================================


class TestTemplateProperties:
    @pytest.mark.unit
    @given(template=text(max_size=200).filter(lambda t: "{" not in t))
    @h_settings(max_examples=100, deadline=None)
    def test_text_without_placeholders_is_unchanged(self, template):
        assert render(template, {"phone": "972501234567"}) == template
