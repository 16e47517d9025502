"""
Circuit Breaker

Decides whether the shared state store may be called. While the breaker is
open every call is served by the local fallback; after the retry timeout a
limited number of half-open trial calls are let through to check recovery.
"""
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar
from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # primary in use
    OPEN = "open"            # primary skipped
    HALF_OPEN = "half_open"  # trying the primary again


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 1
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 1


class CircuitBreaker:
    """
    Failure counter with open / half-open / closed transitions.

    Runs on a single event loop; state is mutated only between awaits, so no
    lock is taken.
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def allow_request(self) -> bool:
        """האם מותר לפנות לשירות כרגע (כולל מעבר ל-half-open כשהזמן עבר)"""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self.retry_after() > 0:
                return False
            self._transition_to(CircuitState.HALF_OPEN)

        if self._half_open_calls < self.config.half_open_max_calls:
            self._half_open_calls += 1
            return True
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        self._failure_count += 1
        logger.debug(
            f"Circuit breaker '{self.service_name}' recorded failure",
            extra_data={
                "service": self.service_name,
                "failure_count": self._failure_count,
                "threshold": self.config.failure_threshold,
                "error": str(error) if error else None,
            }
        )

        if self._state == CircuitState.HALF_OPEN:
            # כשלון בבדיקה חוזרת, חוזרים מיד למצב פתוח
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def retry_after(self) -> float:
        """Seconds until the next half-open trial call is allowed"""
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (self._clock() - self._opened_at)
        return max(0.0, remaining)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the breaker refused the call
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())

        try:
            result = await func()
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result
