"""
Circuit-breaker protection for automated repair ("heal") attempts.

A heal operation is supplied by the caller (typically an agent attempting
to fix a failing task) and returns True when the repair worked. Each attempt
runs the operation under the retry policy inside a circuit breaker named
``heal``, so a run of transient errors counts as one breaker failure while
repeated real failures open the circuit and stop further attempts until the
timeout elapses.

Every breaker state change is appended to ``circuit-breaker.log``::

    [2024-01-15T10:30:00+00:00] Circuit state: OPEN
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from taskweave.enums import CircuitState
from taskweave.exceptions import TaskweaveError
from taskweave.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from taskweave.resilience.retry import RetryConfig, Sleep, error_code, with_retry
from taskweave.storage.store import DurableStore
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

CIRCUIT_LOG_PATH = "circuit-breaker.log"
HEAL_OPERATION = "heal"

HealOperation = Callable[[], Awaitable[bool]]


@dataclass
class HealingResult:
    success: bool
    task_id: str
    attempt_number: int
    circuit_state: CircuitState
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["circuit_state"] = self.circuit_state.value
        return data


@dataclass
class HealingStats:
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    circuit_open_count: int = 0
    current_circuit_state: CircuitState = CircuitState.CLOSED
    attempts_by_task: dict[str, int] = field(default_factory=dict)


class HealingService:
    """Run heal operations behind a circuit breaker.

    One breaker per service instance; it lives as long as the process.
    """

    def __init__(
        self,
        store: DurableStore,
        circuit_config: CircuitBreakerConfig | None = None,
        retry_config: RetryConfig | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._stats = HealingStats()
        self._pending_changes: list[CircuitState] = []
        self.breaker = CircuitBreaker(
            HEAL_OPERATION,
            circuit_config,
            clock=self.clock,
            on_state_change=self._on_state_change,
        )

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    def stats(self) -> HealingStats:
        """Copy of the attempt counters."""
        return HealingStats(
            total_attempts=self._stats.total_attempts,
            successful_attempts=self._stats.successful_attempts,
            failed_attempts=self._stats.failed_attempts,
            circuit_open_count=self._stats.circuit_open_count,
            current_circuit_state=self.breaker.state,
            attempts_by_task=dict(self._stats.attempts_by_task),
        )

    async def attempt_healing(self, task_id: str, operation: HealOperation) -> HealingResult:
        """Run one heal attempt for ``task_id``.

        Never raises for failures of ``operation`` or an open circuit; they
        are reported in the result.
        """
        attempt_number = self._stats.attempts_by_task.get(task_id, 0) + 1
        self._stats.attempts_by_task[task_id] = attempt_number
        self._stats.total_attempts += 1
        log.info("healing_attempt", task_id=task_id, attempt=attempt_number, circuit_state=self.breaker.state.value)

        try:
            success = await self.breaker.execute(self._with_retry(operation))
        except Exception as e:
            self._stats.failed_attempts += 1
            await self._flush_state_changes()
            log.error(
                "healing_failed",
                task_id=task_id,
                attempt=attempt_number,
                error=str(e),
                circuit_state=self.breaker.state.value,
            )
            return HealingResult(
                success=False,
                task_id=task_id,
                attempt_number=attempt_number,
                circuit_state=self.breaker.state,
                error=e.message if isinstance(e, TaskweaveError) else str(e),
                error_code=error_code(e),
            )

        if success:
            self._stats.successful_attempts += 1
            log.info("healing_succeeded", task_id=task_id, attempt=attempt_number)
        else:
            self._stats.failed_attempts += 1
            log.warning("healing_returned_false", task_id=task_id, attempt=attempt_number)
        await self._flush_state_changes()

        return HealingResult(
            success=bool(success),
            task_id=task_id,
            attempt_number=attempt_number,
            circuit_state=self.breaker.state,
        )

    async def reset_circuit(self) -> None:
        """Close the circuit and zero its counters. Attempt stats are kept."""
        log.info("healing_circuit_reset")
        self.breaker.reset()
        await self._flush_state_changes()

    def _with_retry(self, operation: HealOperation) -> HealOperation:
        async def run() -> bool:
            return await with_retry(operation, self.retry_config, sleep=self._sleep, name=HEAL_OPERATION)

        return run

    def _on_state_change(self, old_state: CircuitState, new_state: CircuitState) -> None:
        if new_state == CircuitState.OPEN:
            self._stats.circuit_open_count += 1
            log.error("healing_circuit_opened", circuit_open_count=self._stats.circuit_open_count)
        self._pending_changes.append(new_state)

    async def _flush_state_changes(self) -> None:
        changes, self._pending_changes = self._pending_changes, []
        for state in changes:
            entry = f"[{self.clock.now().isoformat()}] Circuit state: {state.value}\n"
            try:
                await self.store.append(CIRCUIT_LOG_PATH, entry)
            except TaskweaveError as e:
                log.warning("circuit_log_write_failed", path=CIRCUIT_LOG_PATH, error=e.message)
