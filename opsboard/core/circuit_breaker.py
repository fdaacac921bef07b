"""
Circuit breaker for the outbound webhook endpoints.

One breaker per endpoint (``webhook:alerts``, ``webhook:stage_change``,
``webhook:phase_activation``), so a dead endpoint fails fast instead of
burning the full HTTP timeout for every alert in a batch.
"""
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar
from dataclasses import dataclass

from opsboard.core.config import settings
from opsboard.core.logging import get_logger
from opsboard.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5          # consecutive failures before opening
    success_threshold: int = 2          # half-open successes before closing
    timeout_seconds: float = 30.0       # open period before a trial call is allowed
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    CLOSED counts consecutive failures; OPEN rejects every call until
    ``timeout_seconds`` passed since the last failure; HALF_OPEN lets a few
    trial calls through and closes after ``success_threshold`` successes.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._half_open_successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        # threading.Lock: Celery tasks run each invocation on a fresh event loop
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._instances_lock:
            if service_name not in cls._instances:
                cls._instances[service_name] = cls(service_name, config)
            return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _set_state(self, state: CircuitState) -> None:
        """Caller holds the lock"""
        if state == self._state:
            return
        logger.info(
            f"Webhook circuit '{self.service_name}' is now {state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": self._state.value,
                "new_state": state.value,
                "failures": self._failures,
            }
        )
        self._state = state
        self._half_open_calls = 0
        self._half_open_successes = 0
        if state == CircuitState.CLOSED:
            self._failures = 0

    def get_retry_after(self) -> float:
        """Seconds left in the open period (0 when not open)"""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.time() - self._opened_at))

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    async def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._failures = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Webhook circuit '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failures": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._opened_at = time.time()
                self._set_state(CircuitState.OPEN)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func()`` under the breaker.

        Raises:
            CircuitBreakerOpenError: the circuit is open (``func`` is not called)
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func()
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


def get_webhook_circuit_breaker(endpoint: str) -> CircuitBreaker:
    """Breaker for one logical webhook endpoint, thresholds from settings"""
    return CircuitBreaker.get_instance(
        f"webhook:{endpoint}",
        CircuitBreakerConfig(
            failure_threshold=settings.WEBHOOK_FAILURE_THRESHOLD,
            success_threshold=2,
            timeout_seconds=settings.WEBHOOK_RECOVERY_SECONDS,
        )
    )
