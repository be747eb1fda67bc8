"""
Task operations exposed to the CLI and to agents.

The service owns the task lifecycle rules that span more than one task:
dependency checks on start, the workflow state's current-task pointer, the
progress log, and batches.

Progress Log:
    ``progress.log`` in the data directory receives one line per mutation::

        [2024-01-15T10:30:00+00:00] STARTED: auth.login
        [2024-01-15T10:55:00+00:00] COMPLETED: auth.login - 25m

    A failure to write the log is logged as a warning and never fails the
    mutation that produced it.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, Field, field_validator, model_validator

from taskweave.config.settings import TasksConfig
from taskweave.engine.batch import BatchCoordinator, BatchOperation, BatchResult
from taskweave.engine.scheduler import ScheduleDecision, schedule
from taskweave.enums import BatchAction, ScheduleReason, SortKey, TaskStatus
from taskweave.exceptions import (
    DependencyNotMetError,
    TaskNotFoundError,
    TaskweaveError,
    ValidationError,
)
from taskweave.models.domain import Task, WorkflowState
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskFilter, TaskRepository
from taskweave.storage.store import DurableStore
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

PROGRESS_LOG_PATH = "progress.log"
DEFAULT_LIST_LIMIT = 100


class CreateTaskInput(BaseModel):
    """Fields accepted when creating a task."""

    id: str = Field(min_length=1, description="Dot-namespaced id, prefixed by the module")
    module: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    description: str = Field(min_length=1)
    priority: int | None = Field(default=None, ge=0)
    estimated_minutes: int | None = Field(default=None, ge=0)
    acceptance_criteria: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    test_pattern: str | None = None

    @field_validator("description")
    @classmethod
    def single_line(cls, v: str) -> str:
        if "\n" in v or "\r" in v:
            raise ValueError("description must be a single line")
        v = v.strip()
        if not v:
            raise ValueError("description must not be blank")
        return v

    @field_validator("acceptance_criteria")
    @classmethod
    def single_line_criteria(cls, v: list[str]) -> list[str]:
        criteria = []
        for criterion in v:
            if "\n" in criterion or "\r" in criterion:
                raise ValueError("each acceptance criterion must be a single line")
            criterion = criterion.strip()
            if not criterion:
                raise ValueError("acceptance criteria must not be blank")
            criteria.append(criterion)
        return criteria

    @field_validator("dependencies")
    @classmethod
    def dedupe(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(dep.strip() for dep in v if dep.strip()))

    @model_validator(mode="after")
    def validate_id(self) -> "CreateTaskInput":
        if not self.id.startswith(f"{self.module}.") or self.id == f"{self.module}.":
            raise ValueError(f"id must start with '{self.module}.'")
        if self.id in self.dependencies:
            raise ValueError("a task cannot depend on itself")
        return self


@dataclass
class TaskListOptions:
    task_filter: TaskFilter | None = None
    limit: int = DEFAULT_LIST_LIMIT
    offset: int = 0
    sort: SortKey = SortKey.PRIORITY


@dataclass
class TaskListResult:
    """A page of tasks plus the total number of matches."""

    tasks: list[Task] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = DEFAULT_LIST_LIMIT

    @property
    def returned(self) -> int:
        return len(self.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "returned": self.returned,
        }


def _validation_error(error: pydantic.ValidationError) -> ValidationError:
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first["loc"]) or None
    message = first["msg"].removeprefix("Value error, ")
    return ValidationError(f"Invalid input: {message}", field=field_name)


class ProgressLog:
    """Append-only, human-readable audit trail of task mutations."""

    def __init__(self, store: DurableStore, clock: Clock, path: str = PROGRESS_LOG_PATH) -> None:
        self.store = store
        self.clock = clock
        self.path = path

    async def record(self, action: str, task_id: str, details: str | None = None) -> None:
        line = f"[{self.clock.now().isoformat()}] {action}: {task_id}"
        if details:
            line = f"{line} - {details}"
        try:
            await self.store.append(self.path, f"{line}\n")
        except TaskweaveError as e:
            log.warning("progress_log_write_failed", action=action, task_id=task_id, error=e.message)


class TaskService:
    """Create, query, schedule and transition tasks.

    Args:
        tasks: Task repository
        state: Workflow state repository
        store: Durable store, used for the progress log
        clock: Time source for task and state timestamps
        defaults: Priority and estimate applied on creation
    """

    def __init__(
        self,
        tasks: TaskRepository,
        state: StateRepository,
        store: DurableStore,
        clock: Clock | None = None,
        defaults: TasksConfig | None = None,
    ) -> None:
        self.tasks = tasks
        self.state = state
        self.clock = clock or SystemClock()
        self.defaults = defaults or TasksConfig()
        self.progress = ProgressLog(store, self.clock)
        self.batch = BatchCoordinator(
            tasks,
            state,
            self.apply_operation,
            clock=self.clock,
            on_restore=self._record_rollback,
        )

    async def initialize(self, project_goal: str, language_config: Any = None) -> dict[str, Any]:
        """Record the project goal (and optional language settings) in the index.

        Without ``language_config`` any previously stored language settings
        are kept, and none are added.
        """
        if language_config is None:
            index = await self.tasks.index.update_metadata(project_goal=project_goal)
        else:
            index = await self.tasks.index.update_metadata(project_goal=project_goal, language_config=language_config)
        return dict(index["metadata"])

    async def create_task(self, data: CreateTaskInput | Mapping[str, Any]) -> Task:
        """Create a pending task.

        Raises:
            ValidationError: If the input is malformed.
            AlreadyExistsError: If the id is taken.
        """
        if not isinstance(data, CreateTaskInput):
            try:
                data = CreateTaskInput.model_validate(data)
            except pydantic.ValidationError as e:
                raise _validation_error(e) from e

        task = Task(
            id=data.id,
            module=data.module,
            description=data.description,
            priority=data.priority if data.priority is not None else self.defaults.default_priority,
            estimated_minutes=(
                data.estimated_minutes
                if data.estimated_minutes is not None
                else self.defaults.default_estimated_minutes
            ),
            acceptance_criteria=list(data.acceptance_criteria),
            dependencies=list(data.dependencies),
            test_requirements={"unit": {"required": True, "pattern": data.test_pattern}} if data.test_pattern else {},
        )
        await self.tasks.create(task)
        log.info("task_created", task_id=task.id, module=task.module, dependencies=task.dependencies)
        await self.progress.record("CREATED", task.id)
        return task

    async def get_task(self, task_id: str) -> Task:
        """Load a task.

        Raises:
            TaskNotFoundError: If no task has ``task_id``.
        """
        task = await self.tasks.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, options: TaskListOptions | None = None) -> TaskListResult:
        options = options or TaskListOptions()
        if options.limit < 0 or options.offset < 0:
            raise ValidationError("limit and offset must not be negative", field="limit" if options.limit < 0 else "offset")

        tasks = await self.tasks.find_all(options.task_filter, offset=options.offset, limit=options.limit, sort=options.sort)
        total = await self.tasks.count(options.task_filter)
        return TaskListResult(tasks=tasks, total=total, offset=options.offset, limit=options.limit)

    async def get_next_task(self) -> Task | None:
        """The ready task with the lowest priority value, or None."""
        decision = await self.explain_next_task()
        return decision.task

    async def explain_next_task(self) -> ScheduleDecision:
        """Run the scheduler and report why a task was or was not selected."""
        decision = schedule(await self.tasks.find_all())

        if decision.reason == ScheduleReason.READY and decision.task is not None:
            log.info("next_task_selected", task_id=decision.task.id, priority=decision.task.priority)
        elif decision.reason == ScheduleReason.CYCLE:
            log.warning(
                "next_task_blocked_by_cycle",
                cycles=decision.cycles,
                blocked=sorted(decision.blocked),
            )
        elif decision.reason == ScheduleReason.WAITING:
            log.warning("no_ready_tasks", blocked=decision.blocked)
        else:
            log.info("no_pending_tasks")
        return decision

    async def start_task(self, task_id: str, *, ignore_dependencies: bool = False) -> Task:
        """Mark a task in progress and point the workflow state at it.

        Starting a task that is already in progress or completed returns it
        unchanged.

        Raises:
            TaskNotFoundError: If the task does not exist.
            DependencyNotMetError: If a dependency is missing or unfinished
                and ``ignore_dependencies`` is false.
            InvalidStateTransitionError: If the task is failed or blocked.
        """
        task = await self.get_task(task_id)

        if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
            log.warning("task_already_started", task_id=task_id, status=task.status.value)
            return task

        if not ignore_dependencies:
            unmet = task.unmet_dependencies(await self.tasks.status_map())
            if unmet:
                raise DependencyNotMetError(task_id, unmet)

        task.start(self.clock.now())
        await self.tasks.save(task)
        await self._point_current_task(task_id)

        log.info("task_started", task_id=task_id)
        await self.progress.record("STARTED", task_id)
        return task

    async def complete_task(self, task_id: str, duration: str | None = None) -> Task:
        """Mark an in-progress task completed.

        Completing an already completed task returns it unchanged.

        Raises:
            TaskNotFoundError: If the task does not exist.
            InvalidStateTransitionError: If the task is not in progress.
        """
        task = await self.get_task(task_id)

        if task.status == TaskStatus.COMPLETED:
            log.warning("task_already_completed", task_id=task_id)
            return task

        task.complete(self.clock.now())
        if duration:
            task.append_note(f"Completed in {duration}")
        await self.tasks.save(task)
        await self._release_current_task(task_id)

        log.info("task_completed", task_id=task_id, duration=duration)
        await self.progress.record("COMPLETED", task_id, duration)
        return task

    async def fail_task(self, task_id: str, reason: str) -> Task:
        """Mark an in-progress task failed and record the failure in the workflow state.

        Raises:
            ValidationError: If ``reason`` is empty.
            TaskNotFoundError: If the task does not exist.
            InvalidStateTransitionError: If the task is not in progress.
        """
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required", field="reason")

        task = await self.get_task(task_id)
        now = self.clock.now()
        task.fail(now)
        task.append_note(f"Failed: {reason}")
        await self.tasks.save(task)

        if await self.state.exists():

            def record_failure(state: WorkflowState) -> None:
                state.add_error({"taskId": task_id, "reason": reason, "timestamp": now.isoformat()}, now)
                if state.current_task == task_id:
                    state.set_current_task(None, now)

            await self.state.update(record_failure)

        log.warning("task_failed", task_id=task_id, reason=reason)
        await self.progress.record("FAILED", task_id, reason)
        return task

    async def batch_operations(
        self,
        operations: Sequence[BatchOperation | Mapping[str, Any]],
        atomic: bool = False,
    ) -> list[BatchResult]:
        """Apply several start/done/fail operations.

        Raises:
            ValidationError: If an operation is malformed; nothing is applied.
            BatchOperationError: If an atomic batch failed and was rolled back.
        """
        parsed = []
        for position, operation in enumerate(operations):
            if isinstance(operation, BatchOperation):
                parsed.append(operation)
                continue
            try:
                parsed.append(BatchOperation.model_validate(operation))
            except pydantic.ValidationError as e:
                error = _validation_error(e)
                raise ValidationError(f"Operation {position}: {error.message}", field=error.field) from e
        return await self.batch.run(parsed, atomic=atomic)

    async def apply_operation(self, operation: BatchOperation) -> Task:
        """Dispatch a single batch operation to its transition."""
        match operation.action:
            case BatchAction.START:
                return await self.start_task(operation.task_id)
            case BatchAction.DONE:
                return await self.complete_task(operation.task_id, operation.duration)
            case BatchAction.FAIL:
                return await self.fail_task(operation.task_id, operation.reason or "")

    async def _point_current_task(self, task_id: str) -> None:
        if not await self.state.exists():
            return
        await self.state.update(lambda state: state.set_current_task(task_id, self.clock.now()))

    async def _release_current_task(self, task_id: str) -> None:
        if not await self.state.exists():
            return
        state = await self.state.get()
        if state is None or state.current_task != task_id:
            return
        await self.state.update(lambda s: s.set_current_task(None, self.clock.now()))

    async def _record_rollback(self, task: Task) -> None:
        await self.progress.record("ROLLED_BACK", task.id, f"restored to {task.status.value}")
