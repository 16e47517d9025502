"""
בדיקות Safety Guard - סדר הבדיקות, dedup, הגבלת קצב וניקוי תקופתי
"""
import pytest

from app.domain.services.safety_guard import (
    RejectReason,
    SafetyGuard,
    SafetyGuardConfig,
)
from tests.conftest import DEVICE_ID, OTHER_SENDER_JID, SENDER_JID


@pytest.fixture
def guard(fake_clock) -> SafetyGuard:
    return SafetyGuard(
        SafetyGuardConfig(max_replies_per_window=3, rate_limit_window_seconds=60, dedup_ttl_seconds=300),
        clock=fake_clock,
    )


class TestCheckOrder:
    @pytest.mark.unit
    def test_own_message_always_rejected_first(self, guard: SafetyGuard):
        guard.add_known_bot("status@broadcast")
        decision = guard.should_process(DEVICE_ID, "status@broadcast", "m1", from_me=True)
        assert not decision.allowed
        assert decision.reason == RejectReason.OWN_MESSAGE.value

    @pytest.mark.unit
    @pytest.mark.parametrize("jid", ["status@broadcast", "12345@broadcast"])
    def test_broadcast_senders_ignored(self, guard: SafetyGuard, jid: str):
        decision = guard.should_process(DEVICE_ID, jid, "m1", from_me=False, ignore_groups=False)
        assert decision.reason == RejectReason.IGNORE_PATTERN.value

    @pytest.mark.unit
    def test_groups_ignored_only_when_configured(self, guard: SafetyGuard):
        group = "120363000000@g.us"
        assert guard.should_process(DEVICE_ID, group, "m1", False, ignore_groups=True).reason == "ignore_pattern"
        assert guard.should_process(DEVICE_ID, group, "m2", False, ignore_groups=False).allowed

    @pytest.mark.unit
    def test_known_bot_rejected(self, guard: SafetyGuard):
        guard.add_known_bot(SENDER_JID)
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).reason == "known_bot"

        guard.remove_known_bot(SENDER_JID)
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).allowed

    @pytest.mark.unit
    def test_internal_error_fails_closed(self, guard: SafetyGuard):
        decision = guard.should_process(DEVICE_ID, None, "m1", False)  # type: ignore[arg-type]
        assert not decision.allowed
        assert decision.reason == RejectReason.ERROR.value


class TestDeduplication:
    @pytest.mark.unit
    def test_second_delivery_of_same_message_is_duplicate(self, guard: SafetyGuard):
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).allowed
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).reason == "duplicate"

    @pytest.mark.unit
    def test_rejected_message_is_not_recorded(self, guard: SafetyGuard):
        """הודעה שנדחתה (למשל קבוצה) לא נרשמת - אותו id מאושר בהמשך"""
        guard.should_process(DEVICE_ID, "1@g.us", "m1", False, ignore_groups=True)
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).allowed

    @pytest.mark.unit
    def test_missing_message_id_is_never_deduplicated(self, guard: SafetyGuard):
        assert guard.should_process(DEVICE_ID, SENDER_JID, None, False).allowed
        assert guard.should_process(DEVICE_ID, SENDER_JID, "", False).allowed
        assert guard.get_stats()["tracked_messages"] == 0

    @pytest.mark.unit
    def test_sweep_forgets_old_message_ids(self, guard: SafetyGuard, fake_clock):
        guard.should_process(DEVICE_ID, SENDER_JID, "m1", False)
        fake_clock.advance(301)

        assert guard.sweep()["messages"] == 1
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).allowed


class TestRateLimit:
    @pytest.mark.unit
    def test_budget_exhausted_then_recovers(self, guard: SafetyGuard, fake_clock):
        for _ in range(3):
            guard.record_auto_reply(DEVICE_ID, SENDER_JID)
            fake_clock.advance(1)

        assert guard.should_process(DEVICE_ID, SENDER_JID, "m1", False).reason == "rate_limited"
        # שולח אחר לא מושפע
        assert guard.should_process(DEVICE_ID, OTHER_SENDER_JID, "m2", False).allowed

        # התשובה הוותיקה ביותר יוצאת מהחלון
        fake_clock.advance(58)
        assert guard.should_process(DEVICE_ID, SENDER_JID, "m3", False).allowed

    @pytest.mark.unit
    def test_arrivals_alone_do_not_consume_budget(self, guard: SafetyGuard):
        for i in range(10):
            assert guard.should_process(DEVICE_ID, SENDER_JID, f"m{i}", False).allowed

    @pytest.mark.unit
    def test_rate_limit_status(self, guard: SafetyGuard, fake_clock):
        guard.record_auto_reply(DEVICE_ID, SENDER_JID)
        fake_clock.advance(20)
        guard.record_auto_reply(DEVICE_ID, SENDER_JID)

        status = guard.get_rate_limit_status(DEVICE_ID, SENDER_JID)
        assert status.count == 2
        assert status.remaining == 1
        assert status.reset_in == pytest.approx(40)

    @pytest.mark.unit
    def test_sweep_drops_senders_with_empty_window(self, guard: SafetyGuard, fake_clock):
        guard.record_auto_reply(DEVICE_ID, SENDER_JID)
        fake_clock.advance(61)

        assert guard.sweep() == {"messages": 0, "senders": 1}
        assert guard.get_stats()["tracked_senders"] == 0
