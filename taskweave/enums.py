"""Enumerations for task status, workflow phases, batch actions and scheduling."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status.

    The only legal path is PENDING -> IN_PROGRESS -> COMPLETED | FAILED.
    BLOCKED is accepted from stored documents but never entered by the core.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value


class Phase(str, Enum):
    """Workflow phases, in declaration order.

    The allowed moves between phases live in
    :data:`taskweave.models.domain.PHASE_TRANSITIONS`.
    """

    CLARIFY = "clarify"
    BREAKDOWN = "breakdown"
    IMPLEMENT = "implement"
    HEAL = "heal"
    DELIVER = "deliver"
    COMPLETE = "complete"

    def __str__(self) -> str:
        return self.value


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    """Normal operation, calls pass through and failures are counted."""

    OPEN = "OPEN"
    """Fail-fast mode, the wrapped operation is not invoked."""

    HALF_OPEN = "HALF_OPEN"
    """Trial mode after the timeout elapsed."""

    def __str__(self) -> str:
        return self.value


class BatchAction(str, Enum):
    """Task transitions that can be requested in a batch."""

    START = "start"
    DONE = "done"
    FAIL = "fail"

    def __str__(self) -> str:
        return self.value


class SortKey(str, Enum):
    """Sort keys accepted when listing tasks."""

    PRIORITY = "priority"
    STATUS = "status"
    ESTIMATED_MINUTES = "estimated_minutes"

    def __str__(self) -> str:
        return self.value


class ScheduleReason(str, Enum):
    """Why the scheduler did or did not produce a task."""

    READY = "ready"
    """A ready task was selected."""

    EXHAUSTED = "exhausted"
    """No pending tasks remain."""

    WAITING = "waiting"
    """Pending tasks exist but all wait on unfinished dependencies."""

    CYCLE = "cycle"
    """Pending tasks are starved by a dependency cycle."""

    def __str__(self) -> str:
        return self.value
