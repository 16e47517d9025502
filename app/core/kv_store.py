"""
Key/Value Store - ממשק אחיד לאחסון עם TTL.

שלושה מימושים מאחורי אותו ממשק:
- RedisKeyValueStore: אחסון משותף בין תהליכים (ראשי)
- InMemoryKeyValueStore: מפה מקומית עם זמני תפוגה ידניים (גיבוי)
- FailoverKeyValueStore: מנתב לראשי כל עוד ה-circuit breaker מאפשר,
  ועובר לגיבוי בשקיפות כשהראשי לא זמין

הלוגיקה העסקית תלויה רק ב-KeyValueStore ולא בסוג האחסון.
"""
from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.circuit_breaker import CircuitBreaker
from app.core.exceptions import CircuitBreakerOpenError, StateStoreUnavailableError
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class KeyValueStore(ABC):
    """Async key/value port with per-key TTL"""

    backend_name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Value for ``key`` or None when absent or expired"""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Replace ``key`` with ``value``, expiring after ``ttl_seconds``"""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error"""

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """All live keys starting with ``prefix``"""


class RedisKeyValueStore(KeyValueStore):
    """Redis adapter. Timeouts and connection errors surface as StateStoreUnavailableError."""

    backend_name = "redis"

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
        timeout_seconds: float = 1.0,
    ) -> None:
        self._client_factory = client_factory
        self._timeout = timeout_seconds

    async def _call(self, operation: str, func: Callable[[aioredis.Redis], Awaitable[T]]) -> T:
        async def _run() -> T:
            client = await self._client_factory()
            return await func(client)

        try:
            return await asyncio.wait_for(_run(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StateStoreUnavailableError(operation, "timeout") from e
        except (RedisError, OSError) as e:
            raise StateStoreUnavailableError(operation, str(e)) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda client: client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", lambda client: client.set(key, value, ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._call("delete", lambda client: client.delete(key))

    async def keys(self, prefix: str) -> list[str]:
        # SCAN ולא KEYS - לא חוסם את Redis על מרחב מפתחות גדול
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"

        async def _scan(client: aioredis.Redis) -> list[str]:
            return [key async for key in client.scan_iter(match=pattern, count=200)]

        return await self._call("keys", _scan)


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local fallback. Expiry instants are tracked by hand on a monotonic clock."""

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}

    def _is_expired(self, key: str, now: float) -> bool:
        expires_at = self._expires_at.get(key)
        return expires_at is not None and now >= expires_at

    def _evict(self, key: str) -> None:
        self._values.pop(key, None)
        self._expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        if self._is_expired(key, self._clock()):
            self._evict(key)
            return None
        return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._values[key] = value
        self._expires_at[key] = self._clock() + ttl_seconds

    async def delete(self, key: str) -> None:
        self._evict(key)

    async def keys(self, prefix: str) -> list[str]:
        now = self._clock()
        return [
            key for key in list(self._values)
            if key.startswith(prefix) and not self._is_expired(key, now)
        ]

    def sweep_expired(self) -> int:
        """מחיקת רשומות שפג תוקפן. מחזיר כמה נמחקו."""
        now = self._clock()
        expired = [key for key, expires_at in self._expires_at.items() if now >= expires_at]
        for key in expired:
            self._evict(key)
        if expired:
            logger.debug(
                "Fallback store sweep",
                extra_data={"removed": len(expired), "remaining": len(self._values)},
            )
        return len(expired)

    def __len__(self) -> int:
        return len(self._values)


class FailoverKeyValueStore(KeyValueStore):
    """
    Primary store guarded by a circuit breaker, with a fallback behind it.

    Each call goes to the primary while the breaker allows it. A failing call
    is recorded on the breaker and served by the fallback instead; once the
    breaker opens the primary is skipped until its retry timeout elapses.

    רשומה שנכתבה לגיבוי נשארת גלויה עד שהיא נכתבת מחדש לראשי, נמחקת או
    פגה: get שלא מצא בראשי בודק את הגיבוי, וכתיבה מוצלחת לראשי מוחקת את
    העותק המקומי.
    """

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: InMemoryKeyValueStore,
        breaker: CircuitBreaker,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._breaker = breaker

    @property
    def backend_name(self) -> str:  # type: ignore[override]
        return self.active_backend.backend_name

    @property
    def active_backend(self) -> KeyValueStore:
        return self._fallback if self._breaker.is_open else self._primary

    @property
    def fallback(self) -> InMemoryKeyValueStore:
        return self._fallback

    async def _try_primary(
        self,
        operation: str,
        primary_call: Callable[[KeyValueStore], Awaitable[T]],
    ) -> tuple[bool, Optional[T]]:
        """(True, result) כשהראשי ענה; (False, None) כשנחסם או נכשל"""
        try:
            result = await self._breaker.execute(lambda: primary_call(self._primary))
        except CircuitBreakerOpenError:
            return False, None
        except Exception as e:
            logger.warning(
                "Primary state store failed, serving from fallback",
                extra_data={
                    "operation": operation,
                    "backend": self._primary.backend_name,
                    "error": str(e),
                },
            )
            return False, None
        return True, result

    async def get(self, key: str) -> Optional[str]:
        ok, value = await self._try_primary("get", lambda store: store.get(key))
        if ok and value is not None:
            return value
        return await self._fallback.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ok, _ = await self._try_primary("set", lambda store: store.set(key, value, ttl_seconds))
        if ok:
            await self._fallback.delete(key)
        else:
            await self._fallback.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._try_primary("delete", lambda store: store.delete(key))
        await self._fallback.delete(key)

    async def keys(self, prefix: str) -> list[str]:
        ok, primary_keys = await self._try_primary("keys", lambda store: store.keys(prefix))
        fallback_keys = await self._fallback.keys(prefix)
        if not ok:
            return fallback_keys
        return list(dict.fromkeys([*primary_keys, *fallback_keys]))

    def sweep_expired(self) -> int:
        return self._fallback.sweep_expired()
