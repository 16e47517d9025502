"""
בדיקות ה-runtime: פעולות מנהל וסטטיסטיקות בוט
"""
import pytest

from app.db.models.bot_action_log import BotActionType
from app.domain.services.conversation_state_service import ConversationStatus
from tests.conftest import DEVICE_ID, OTHER_SENDER_JID, SENDER_JID


class TestBotStats:
    @pytest.mark.integration
    async def test_stats_for_unconfigured_device(self, runtime):
        stats = await runtime.stats.get_bot_stats(DEVICE_ID)

        assert stats == {
            "bot_enabled": False,
            "active_rules": 0,
            "conversations": {"total": 0, "idle": 0, "active_bot": 0, "handoff": 0},
        }

    @pytest.mark.integration
    async def test_stats_count_rules_and_conversations(
        self, runtime, bot_config_factory, rule_factory
    ):
        await bot_config_factory()
        await rule_factory(name="a")
        await rule_factory(name="b", is_active=False)
        await runtime.handoff.initiate_handoff(DEVICE_ID, SENDER_JID)
        await runtime.state_service.set(DEVICE_ID, OTHER_SENDER_JID, ConversationStatus.ACTIVE_BOT)

        stats = await runtime.stats.get_bot_stats(DEVICE_ID)

        assert stats["bot_enabled"] is True
        assert stats["active_rules"] == 1
        assert stats["conversations"] == {"total": 2, "idle": 0, "active_bot": 1, "handoff": 1}


class TestAdminActions:
    @pytest.mark.integration
    async def test_admin_resume_returns_conversation_to_bot(self, runtime, bot_config_factory):
        await bot_config_factory()
        await runtime.handoff.initiate_handoff(DEVICE_ID, SENDER_JID, reason="keyword")

        assert await runtime.resume_conversation(DEVICE_ID, SENDER_JID) is True

        record = await runtime.state_service.get(DEVICE_ID, SENDER_JID)
        assert record.state == ConversationStatus.IDLE
        assert record.handoff_reason is None

        _, rows = await runtime.action_log.list_logs(DEVICE_ID, action_type=BotActionType.HANDOFF_RESUMED)
        assert len(rows) == 1
        assert rows[0].details == {"resumed_by": "admin"}
        assert rows[0].response_message == "Bot is back"

    @pytest.mark.integration
    async def test_admin_reset_deletes_record(self, runtime):
        await runtime.handoff.initiate_handoff(DEVICE_ID, SENDER_JID)

        assert await runtime.reset_conversation(DEVICE_ID, SENDER_JID) is True

        assert await runtime.state_service.get(DEVICE_ID, SENDER_JID) is None
        assert await runtime.handoff.get_handoff_count(DEVICE_ID) == 0

    @pytest.mark.integration
    async def test_reset_then_message_is_handled_by_bot(
        self, runtime, send, bot_config_factory, rule_factory
    ):
        await bot_config_factory()
        await rule_factory()
        await runtime.handoff.initiate_handoff(DEVICE_ID, SENDER_JID)

        await runtime.reset_conversation(DEVICE_ID, SENDER_JID)
        result = await runtime.pipeline.process_incoming(DEVICE_ID, SENDER_JID, "menu please", "m-1", send)

        assert result.processed is True
        send.assert_awaited_once_with(SENDER_JID, "Here's our menu")
