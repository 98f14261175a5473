"""
Circuit breaker for calls to shared infrastructure.

CLOSED passes calls through and counts consecutive failures. At the
threshold it turns OPEN and rejects calls outright until ``recovery_timeout``
has passed; the next call then runs as a HALF_OPEN trial whose outcome
closes or re-opens the circuit.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Tuple, Type, Union

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling through while the circuit is open."""


class CircuitBreaker:
    """Consecutive-failure breaker.

    Only ``expected_exception`` counts as a failure; other exceptions pass
    through without touching the breaker state.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    def _admit_call(self) -> bool:
        if self._state != CircuitBreakerState.OPEN:
            return True
        if self._clock() - self._opened_at < self.recovery_timeout:
            return False
        self._state = CircuitBreakerState.HALF_OPEN
        self.logger.info("Circuit breaker half-open, trying one call")
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if not self._admit_call():
            raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state == CircuitBreakerState.HALF_OPEN:
            self.logger.info("Circuit breaker closed after successful trial call")
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0

    def _on_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state == CircuitBreakerState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            if self._state != CircuitBreakerState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened",
                    consecutive_failures=self._consecutive_failures,
                    threshold=self.failure_threshold,
                )
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
