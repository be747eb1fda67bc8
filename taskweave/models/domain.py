"""
Domain models for the orchestration core.

This module contains the Task entity and the WorkflowState singleton, each
carrying the business rules for its own lifecycle: task status transitions
and dependency readiness, and workflow phase adjacency.

Example:
    Starting and completing a task::

        task = Task(id="auth.login", module="auth", description="Login form")
        task.start(clock.now())
        task.complete(clock.now())
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from taskweave.enums import Phase, TaskStatus
from taskweave.exceptions import InvalidStateTransitionError, ParseError

PHASE_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.CLARIFY: frozenset({Phase.BREAKDOWN}),
    Phase.BREAKDOWN: frozenset({Phase.IMPLEMENT}),
    Phase.IMPLEMENT: frozenset({Phase.HEAL, Phase.DELIVER}),
    Phase.HEAL: frozenset({Phase.IMPLEMENT}),
    Phase.DELIVER: frozenset({Phase.COMPLETE}),
    Phase.COMPLETE: frozenset(),
}
"""Allowed phase moves. ``heal`` is entered only from, and returns only to,
``implement``; ``complete`` is terminal."""


def _parse_timestamp(value: Any, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ParseError(f"Invalid timestamp for {field_name}: {value!r}") from e


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Task:
    """A unit of work in the queue.

    The ``id`` is dot-namespaced and scoped by ``module`` (``auth.login``
    belongs to module ``auth``). Dependencies are task ids that must be
    completed before this task is ready; an id that does not exist is never
    satisfied.
    """

    id: str
    module: str
    description: str
    priority: int = 1
    status: TaskStatus = TaskStatus.PENDING
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_minutes: int | None = None
    dependencies: list[str] = field(default_factory=list)
    test_requirements: dict[str, dict[str, Any]] = field(default_factory=dict)
    notes: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def can_start(self) -> bool:
        """Only pending tasks can be started."""
        return self.status == TaskStatus.PENDING

    def start(self, now: datetime) -> None:
        """Move the task to IN_PROGRESS.

        Raises:
            InvalidStateTransitionError: If the task is not pending.
        """
        if not self.can_start():
            raise InvalidStateTransitionError(
                f"Cannot start task {self.id}: current status is {self.status.value}. "
                "Only pending tasks can be started.",
                current=self.status.value,
                target=TaskStatus.IN_PROGRESS.value,
                allowed=self._allowed_targets(),
            )
        self.status = TaskStatus.IN_PROGRESS
        self.started_at = now

    def complete(self, now: datetime) -> None:
        """Move the task to COMPLETED.

        Raises:
            InvalidStateTransitionError: If the task is not in progress.
        """
        self._require_in_progress("complete", TaskStatus.COMPLETED)
        self.status = TaskStatus.COMPLETED
        self.completed_at = now

    def fail(self, now: datetime) -> None:
        """Move the task to FAILED.

        Raises:
            InvalidStateTransitionError: If the task is not in progress.
        """
        self._require_in_progress("fail", TaskStatus.FAILED)
        self.status = TaskStatus.FAILED
        self.failed_at = now

    def append_note(self, note: str) -> None:
        """Append a line to the notes; existing notes are never rewritten."""
        if self.notes:
            self.notes = f"{self.notes}\n{note}"
        else:
            self.notes = note

    def unmet_dependencies(self, status_by_id: Mapping[str, TaskStatus]) -> list[str]:
        """Dependencies that are unknown or not completed, in declared order."""
        return [dep for dep in self.dependencies if status_by_id.get(dep) != TaskStatus.COMPLETED]

    def is_ready(self, status_by_id: Mapping[str, TaskStatus]) -> bool:
        """Pending with every dependency present and completed."""
        return self.status == TaskStatus.PENDING and not self.unmet_dependencies(status_by_id)

    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def has_dependencies(self) -> bool:
        return len(self.dependencies) > 0

    def actual_duration_minutes(self) -> int | None:
        """Minutes from start to completion or failure, if finished."""
        if self.started_at is None:
            return None
        end = self.completed_at or self.failed_at
        if end is None:
            return None
        return round((end - self.started_at).total_seconds() / 60)

    def is_over_estimate(self) -> bool:
        actual = self.actual_duration_minutes()
        if not actual or not self.estimated_minutes:
            return False
        return actual > self.estimated_minutes

    def completion_percentage(self) -> int:
        """Status-based progress: 0 pending, 50 in progress, 100 completed."""
        if self.status == TaskStatus.COMPLETED:
            return 100
        if self.status == TaskStatus.IN_PROGRESS:
            return 50
        return 0

    def copy(self) -> "Task":
        """Deep copy, independent of this instance."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the persisted (camelCase) field names."""
        return {
            "id": self.id,
            "module": self.module,
            "priority": self.priority,
            "status": self.status.value,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "estimatedMinutes": self.estimated_minutes,
            "dependencies": list(self.dependencies),
            "testRequirements": copy.deepcopy(self.test_requirements),
            "notes": self.notes,
            "startedAt": _format_timestamp(self.started_at),
            "completedAt": _format_timestamp(self.completed_at),
            "failedAt": _format_timestamp(self.failed_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        """Build a task from its serialized form.

        Raises:
            ParseError: If a required field is missing or a value is invalid.
        """
        try:
            task_id = str(data["id"])
            module = str(data["module"])
        except KeyError as e:
            raise ParseError(f"Task record is missing required field {e.args[0]!r}") from e

        try:
            status = TaskStatus(data.get("status", TaskStatus.PENDING.value))
        except ValueError as e:
            raise ParseError(f"Invalid status for task {task_id}: {data.get('status')!r}") from e

        estimated = data.get("estimatedMinutes")
        try:
            priority = int(data.get("priority", 1))
            estimated_minutes = int(estimated) if estimated is not None else None
        except (TypeError, ValueError) as e:
            raise ParseError(f"Invalid numeric field for task {task_id}: {e}") from e

        return cls(
            id=task_id,
            module=module,
            description=str(data.get("description") or ""),
            priority=priority,
            status=status,
            acceptance_criteria=[str(c) for c in data.get("acceptanceCriteria") or []],
            estimated_minutes=estimated_minutes,
            dependencies=[str(d) for d in data.get("dependencies") or []],
            test_requirements=dict(data.get("testRequirements") or {}),
            notes=data.get("notes") or None,
            started_at=_parse_timestamp(data.get("startedAt"), "startedAt"),
            completed_at=_parse_timestamp(data.get("completedAt"), "completedAt"),
            failed_at=_parse_timestamp(data.get("failedAt"), "failedAt"),
        )

    def _require_in_progress(self, verb: str, target: TaskStatus) -> None:
        if self.status != TaskStatus.IN_PROGRESS:
            raise InvalidStateTransitionError(
                f"Cannot {verb} task {self.id}: current status is {self.status.value}. "
                f"Only in_progress tasks can be {'completed' if verb == 'complete' else 'failed'}.",
                current=self.status.value,
                target=target.value,
                allowed=self._allowed_targets(),
            )

    def _allowed_targets(self) -> list[str]:
        if self.status == TaskStatus.PENDING:
            return [TaskStatus.IN_PROGRESS.value]
        if self.status == TaskStatus.IN_PROGRESS:
            return [TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]
        return []


@dataclass
class WorkflowState:
    """The workflow singleton for one workspace.

    ``current_task`` is a weak reference: a task id used as a lookup key that
    may point at a task which no longer exists. ``started_at`` never changes
    after the state is first written; every mutation refreshes
    ``updated_at``.
    """

    phase: Phase
    started_at: datetime
    updated_at: datetime
    current_task: str | None = None
    prd: Any = None
    errors: list[Any] = field(default_factory=list)

    @classmethod
    def create(cls, now: datetime, phase: Phase = Phase.CLARIFY) -> "WorkflowState":
        return cls(phase=phase, started_at=now, updated_at=now)

    def can_transition_to(self, target: Phase) -> bool:
        """Staying in the current phase is always allowed."""
        return target == self.phase or target in PHASE_TRANSITIONS[self.phase]

    def next_allowed_phases(self) -> list[Phase]:
        return sorted(PHASE_TRANSITIONS[self.phase], key=list(Phase).index)

    def transition_to(self, target: Phase, now: datetime) -> None:
        """Move to ``target``.

        Raises:
            InvalidStateTransitionError: If ``target`` is not adjacent.
        """
        if not self.can_transition_to(target):
            raise InvalidStateTransitionError(
                f"Invalid phase transition: {self.phase.value} -> {target.value}",
                current=self.phase.value,
                target=target.value,
                allowed=[p.value for p in self.next_allowed_phases()],
            )
        self.phase = target
        self.updated_at = now

    def set_current_task(self, task_id: str | None, now: datetime) -> None:
        self.current_task = task_id
        self.updated_at = now

    def set_prd(self, prd: Any, now: datetime) -> None:
        self.prd = prd
        self.updated_at = now

    def add_error(self, error: Any, now: datetime) -> None:
        self.errors.append(error)
        self.updated_at = now

    def is_complete(self) -> bool:
        return self.phase == Phase.COMPLETE

    def copy(self) -> "WorkflowState":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "currentTask": self.current_task,
            "prd": self.prd,
            "errors": list(self.errors),
            "startedAt": self.started_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowState":
        """Build the state from its serialized form.

        Raises:
            ParseError: If the phase or a timestamp is invalid.
        """
        try:
            phase = Phase(data["phase"])
        except (KeyError, ValueError) as e:
            raise ParseError(f"Invalid workflow phase: {data.get('phase')!r}") from e

        started_at = _parse_timestamp(data.get("startedAt"), "startedAt")
        updated_at = _parse_timestamp(data.get("updatedAt"), "updatedAt")
        if started_at is None:
            raise ParseError("Workflow state is missing startedAt")

        return cls(
            phase=phase,
            started_at=started_at,
            updated_at=updated_at or started_at,
            current_task=data.get("currentTask"),
            prd=data.get("prd"),
            errors=list(data.get("errors") or []),
        )
