"""Circuit breaker for protecting repeated fallible operations.

Stops calling an operation that keeps failing so a burst of failures does not
cascade. Breakers are process-local and never persisted: create one per
protected operation name, owned by the service that performs the operation.

State Machine:
    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(call after timeout elapsed)--> HALF_OPEN (the call is made)
    HALF_OPEN --(success_threshold consecutive successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

While OPEN and inside the timeout, ``execute`` raises ``CircuitOpenError``
without invoking the operation. Every other failure re-raises the
operation's own exception.

Example:
    >>> breaker = CircuitBreaker("heal", CircuitBreakerConfig(failure_threshold=3))
    >>> result = await breaker.execute(lambda: heal_task(task_id))
"""

from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from pydantic import BaseModel, Field

from taskweave.enums import CircuitState
from taskweave.exceptions import CircuitOpenError
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

T = TypeVar("T")

StateChangeListener = Callable[[CircuitState, CircuitState], None]


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds. ``timeout`` is in seconds."""

    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures before opening")
    timeout: float = Field(default=60.0, ge=0.0, description="Seconds OPEN before a trial call")
    success_threshold: int = Field(default=2, ge=1, description="HALF_OPEN successes needed to close")
    history_size: int = Field(default=20, ge=0, description="Recent failures kept for inspection")


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    """Point-in-time view of a breaker for monitoring."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None


@dataclass(frozen=True)
class FailureRecord:
    """A failure observed by the breaker."""

    timestamp: float
    error_type: str
    message: str


class CircuitBreaker:
    """Circuit breaker around arbitrary async operations.

    Attributes:
        name: Name of the protected operation, used in errors and logs.
        config: Thresholds.
        history: Most recent failures, oldest first.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        on_state_change: StateChangeListener | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self.history: deque[FailureRecord] = deque(maxlen=self.config.history_size)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def metrics(self) -> CircuitBreakerMetrics:
        """Snapshot of the breaker counters."""
        return CircuitBreakerMetrics(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute ``operation`` under circuit breaker protection.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result.

        Raises:
            CircuitOpenError: If the circuit is OPEN and the timeout has not
                elapsed; the operation is not invoked.
            Exception: Whatever the operation raised, unmodified.
        """
        if self._state == CircuitState.OPEN:
            remaining = self._time_until_trial()
            if remaining > 0:
                log.debug("circuit_short_circuited", breaker=self.name, retry_after=remaining)
                raise CircuitOpenError(self.name, retry_after=remaining)
            self._transition(CircuitState.HALF_OPEN)

        try:
            result = await operation()
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED with zeroed counters."""
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self.history.clear()
        self._transition(CircuitState.CLOSED)

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._failure_count = 0
                self._success_count = 0
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def _on_failure(self, error: Exception) -> None:
        now = self._clock.time()
        self._failure_count += 1
        self._last_failure_time = now
        self.history.append(FailureRecord(timestamp=now, error_type=type(error).__name__, message=str(error)))

        if self._state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._transition(CircuitState.OPEN)
        elif self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _time_until_trial(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = self._clock.time() - self._last_failure_time
        return max(0.0, self.config.timeout - elapsed)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        log_method = log.warning if new_state == CircuitState.OPEN else log.info
        log_method(
            "circuit_state_changed",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )

        if self._on_state_change is not None:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                log.warning("circuit_listener_failed", breaker=self.name, error=str(e))
