"""
בדיקות הגדרות האפליקציה (pydantic-settings)
"""
import pytest
from pydantic import ValidationError

from app.core.config import Settings


class TestRateLimitSettings:
    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ("12", 12),
        ("not-a-number", 5),
        ("0", 5),
        ("-3", 5),
    ])
    def test_rate_limit_coercion(self, monkeypatch, raw, expected):
        monkeypatch.setenv("BOT_RATE_LIMIT_PER_MINUTE", raw)
        assert Settings().BOT_RATE_LIMIT_PER_MINUTE == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [("120", 120), ("5", 60), ("abc", 60)])
    def test_window_below_minimum_falls_back(self, monkeypatch, raw, expected):
        monkeypatch.setenv("BOT_RATE_LIMIT_WINDOW_SEC", raw)
        assert Settings().BOT_RATE_LIMIT_WINDOW_SEC == expected


class TestConversationTtls:
    @pytest.mark.unit
    def test_non_positive_ttl_is_rejected(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_STATE_TTL_SECONDS", "0")
        with pytest.raises(ValidationError):
            Settings()

    @pytest.mark.unit
    def test_short_handoff_ttl_warns(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_HANDOFF_TTL_SECONDS", "3600")
        with pytest.warns(UserWarning):
            Settings()


class TestDatabaseUrl:
    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["postgres://u:p@h/db", "postgresql://u:p@h/db"])
    def test_converted_to_asyncpg(self, monkeypatch, raw):
        monkeypatch.setenv("DATABASE_URL", raw)
        assert Settings().DATABASE_URL == "postgresql+asyncpg://u:p@h/db"


class TestKeywordDefaults:
    @pytest.mark.unit
    def test_csv_is_split_and_trimmed(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_HANDOFF_KEYWORDS", " agent , ,נציג")
        assert Settings().default_handoff_keywords == ["agent", "נציג"]
