"""
CircuitBreaker - Stops dispatching to the API after repeated failures.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: API is failing, requests are rejected without reaching the transport
- HALF_OPEN: One probe request is allowed through to test recovery

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: When reset_timeout has elapsed since the last failure
- HALF_OPEN → CLOSED: On successful probe
- HALF_OPEN → OPEN: On failed probe

The breaker judges whole operations: a call that succeeds after retries is
one success, a call that exhausts its retries is one failure.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from persyste.services.errors import CircuitOpenError
from persyste.services.result import Failure, Outcome

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: timedelta = timedelta(seconds=60)  # Time before half-open
    half_open_max_requests: int = 1  # Probes allowed in half-open state


class CircuitBreaker:
    """
    Circuit breaker guarding the task API.

    Usage:
        cb = CircuitBreaker()
        outcome = await cb.call(lambda: run_with_retry(send, policy))
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        name: str = "api",
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._half_open_requests = 0

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN and self._reset_timeout_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._half_open_requests = 0
            logger.info(f"Circuit breaker '{self.name}' moving to HALF_OPEN state")
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> datetime | None:
        return self._last_failure_time

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() >= self._last_failure_time + self.config.reset_timeout

    def can_request(self) -> bool:
        """Check if a request is allowed."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.HALF_OPEN:
            return self._half_open_requests < self.config.half_open_max_requests

        return False

    async def call(self, operation: Callable[[], Awaitable[Outcome[T]]]) -> Outcome[T]:
        """Run operation through the breaker and record its outcome."""
        if not self.can_request():
            logger.warning(
                f"Circuit breaker '{self.name}' rejected request ({self._state.value})"
            )
            return Failure(CircuitOpenError(self.get_time_until_reset() or 0))

        probing = self._state == CircuitState.HALF_OPEN
        if probing:
            self._half_open_requests += 1

        try:
            outcome = await operation()
        finally:
            if probing:
                self._half_open_requests -= 1

        if isinstance(outcome, Failure):
            self.record_failure()
        else:
            self.record_success()
        return outcome

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            # Reset failure count on success
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open()

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        logger.warning(
            f"Circuit breaker '{self.name}' OPENED after "
            f"{self._failure_count} consecutive failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_requests = 0
        logger.info(f"Circuit breaker '{self.name}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_requests = 0
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._last_failure_time:
            return None

        reset_at = self._last_failure_time + self.config.reset_timeout
        remaining = (reset_at - self._clock()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._failure_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "time_until_reset": self.get_time_until_reset(),
        }
