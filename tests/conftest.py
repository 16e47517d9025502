"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- FakeRedis with a failure toggle
- A controllable monotonic clock
- Bot runtime and test data factories
"""
# מסד בדיקות לפני ייבוא app - ה-engine נוצר בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base
import app.db.models  # noqa: F401 - רישום המודלים ב-metadata
from app.domain.services.auto_reply_rule_service import AutoReplyRuleService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.bot_runtime import BotRuntime, build_bot_runtime


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

DEVICE_ID = "device-1"
SENDER_JID = "972501234567@s.whatsapp.net"
OTHER_SENDER_JID = "972509876543@s.whatsapp.net"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """שעון מונוטוני ידני - מתקדם רק כשהבדיקה מזיזה אותו"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.fail = False
        # כשלון חד-פעמי לפי פעולה: {"set": 1} - ה-SET הבא ייכשל פעם אחת
        self.fail_next: dict[str, int] = {}
        self.calls = 0

    def _maybe_fail(self, operation: str) -> None:
        self.calls += 1
        if self.fail_next.get(operation, 0) > 0:
            self.fail_next[operation] -= 1
            raise RedisConnectionError(f"redis {operation} failed")
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def ping(self) -> bool:
        self._maybe_fail("ping")
        return True

    async def get(self, key: str) -> str | None:
        self._maybe_fail("get")
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        self._maybe_fail("set")
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._maybe_fail("delete")
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        """תומך רק בתבנית prefix* (עם escape לתווי glob), כמו שה-store משתמש"""
        self._maybe_fail("scan")
        prefix = None
        if match is not None:
            prefix = match[:-1] if match.endswith("*") else match
            prefix = prefix.replace("\\", "")
        for key in list(self._store):
            if prefix is None or key.startswith(prefix):
                yield key

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fixed_now():
    """שעון קיר קבוע: יום שני 2024-01-15 10:30 UTC"""
    moment = {"value": datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)}

    def _now() -> datetime:
        return moment["value"]

    def _set(value: datetime) -> None:
        moment["value"] = value

    _now.set = _set  # type: ignore[attr-defined]
    return _now


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def redis_factory(fake_redis: FakeRedis):
    async def _factory():
        return fake_redis
    return _factory


@pytest.fixture
def send() -> AsyncMock:
    """send(sender_jid, text) - יכולת השליחה של שכבת התעבורה"""
    return AsyncMock(return_value=True)


# ============================================================================
# Runtime and Test Data Factories
# ============================================================================

@pytest.fixture
def runtime(session_factory, redis_factory, fake_clock, fixed_now) -> BotRuntime:
    return build_bot_runtime(
        session_factory=session_factory,
        redis_factory=redis_factory,
        clock=fake_clock,
        now=fixed_now,
    )


@pytest.fixture
def bot_config_factory(session_factory):
    """Factory for device bot configs (goes through upsert validation)"""
    service = BotConfigService(session_factory)

    async def _create_config(device_id: str = DEVICE_ID, **overrides: Any):
        data: dict[str, Any] = {
            "bot_enabled": True,
            "off_hours_enabled": False,
            "handoff_keywords": ["agent"],
            "resume_keywords": ["bot"],
            "handoff_message": "Connecting you to an agent",
            "resume_message": "Bot is back",
        }
        data.update(overrides)
        return await service.upsert_config(device_id, data)

    return _create_config


@pytest.fixture
def rule_factory(session_factory):
    """Factory for auto reply rules"""
    service = AutoReplyRuleService(session_factory)

    async def _create_rule(device_id: str = DEVICE_ID, **overrides: Any):
        data: dict[str, Any] = {
            "name": "menu",
            "trigger": "menu",
            "match_type": "contains",
            "response": "Here's our menu",
            "priority": 10,
            "cooldown_seconds": 60,
        }
        data.update(overrides)
        return await service.create_rule(device_id, data)

    return _create_rule
