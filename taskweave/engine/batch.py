"""
Batch task transitions with optional all-or-nothing semantics.

Two building blocks:

- :func:`run_steps` runs an ordered list of :class:`Step` objects. When a step
  raises, the compensations of every applied step, the failing one included,
  run in reverse order and :class:`~taskweave.exceptions.StepsRolledBackError`
  is raised.
- :class:`BatchCoordinator` runs a list of :class:`BatchOperation` objects.
  Non-atomic batches execute every operation and report each outcome.
  Atomic batches snapshot every referenced task and the whole workflow
  state up front, run each operation as a step whose compensation
  restores the snapshot, and raise one
  :class:`~taskweave.exceptions.BatchOperationError` after rollback.

Example:
    >>> coordinator = BatchCoordinator(task_repo, state_repo, service.apply_operation)
    >>> results = await coordinator.run(
    ...     [BatchOperation(action="start", task_id="auth.login")], atomic=True
    ... )
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, Field, model_validator

from taskweave.enums import BatchAction
from taskweave.exceptions import BatchOperationError, StepsRolledBackError
from taskweave.models.domain import Task
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskRepository
from taskweave.resilience.retry import error_code
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

OperationExecutor = Callable[["BatchOperation"], Awaitable[Any]]
RestoreListener = Callable[[Task], Awaitable[None]]


class BatchOperation(BaseModel):
    """One requested task transition."""

    action: BatchAction
    task_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, description="Failure reason, required for fail")
    duration: str | None = Field(default=None, description="Time spent, recorded on done")

    @model_validator(mode="after")
    def validate_reason(self) -> "BatchOperation":
        if self.action == BatchAction.FAIL and not self.reason:
            raise ValueError("reason is required for fail operations")
        return self


@dataclass
class BatchResult:
    """Outcome of one operation in a batch."""

    task_id: str
    action: BatchAction
    success: bool
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"taskId": self.task_id, "action": self.action.value, "success": self.success}
        if self.error is not None:
            data["error"] = self.error
            data["code"] = self.error_code
        return data


@dataclass
class Step:
    """A named action with an optional compensating action."""

    name: str
    apply: Callable[[], Awaitable[Any]]
    compensate: Callable[[], Awaitable[None]] | None = None


async def run_steps(steps: Sequence[Step]) -> list[Any]:
    """Apply ``steps`` in order, compensating in reverse on failure.

    Returns:
        The result of each step's ``apply``.

    Raises:
        StepsRolledBackError: If a step raised. Compensation errors are
            collected on the exception; they never stop later compensations.
    """
    applied: list[Step] = []
    results: list[Any] = []

    for step in steps:
        applied.append(step)
        try:
            results.append(await step.apply())
        except Exception as e:
            log.warning("step_failed", step=step.name, error=str(e))
            compensation_errors = await _compensate(applied)
            raise StepsRolledBackError(step.name, e, compensation_errors) from e

    return results


async def _compensate(applied: list[Step]) -> dict[str, BaseException]:
    errors: dict[str, BaseException] = {}
    for step in reversed(applied):
        if step.compensate is None:
            continue
        try:
            await step.compensate()
        except Exception as e:
            log.error("step_compensation_failed", step=step.name, error=str(e))
            errors[step.name] = e
    return errors


def _failure(operation: BatchOperation, error: Exception) -> BatchResult:
    return BatchResult(
        task_id=operation.task_id,
        action=operation.action,
        success=False,
        error=getattr(error, "message", None) or str(error),
        error_code=error_code(error),
    )


class BatchCoordinator:
    """Run batches of task transitions through an operation executor.

    Args:
        tasks: Repository used for snapshots and restores
        state: Repository whose record (current task and errors) is restored on rollback
        execute: Applies a single operation (start/done/fail)
        clock: Time source for the state restore
        on_restore: Awaited with each task restored during rollback
    """

    def __init__(
        self,
        tasks: TaskRepository,
        state: StateRepository,
        execute: OperationExecutor,
        clock: Clock | None = None,
        on_restore: RestoreListener | None = None,
    ) -> None:
        self.tasks = tasks
        self.state = state
        self.execute = execute
        self.clock = clock or SystemClock()
        self.on_restore = on_restore

    async def run(self, operations: Sequence[BatchOperation], atomic: bool = False) -> list[BatchResult]:
        """Execute ``operations`` in order.

        Raises:
            BatchOperationError: In atomic mode, after every touched task and
                the workflow state were restored.
        """
        log.info("batch_started", operations=len(operations), atomic=atomic)
        if atomic:
            results = await self._run_atomic(operations)
        else:
            results = await self._run_each(operations)
        log.info("batch_finished", succeeded=sum(r.success for r in results), failed=sum(not r.success for r in results))
        return results

    async def _run_each(self, operations: Sequence[BatchOperation]) -> list[BatchResult]:
        results = []
        for operation in operations:
            try:
                await self.execute(operation)
            except Exception as e:
                log.warning("batch_operation_failed", task_id=operation.task_id, action=operation.action.value, error=str(e))
                results.append(_failure(operation, e))
                continue
            results.append(BatchResult(task_id=operation.task_id, action=operation.action, success=True))
        return results

    async def _run_atomic(self, operations: Sequence[BatchOperation]) -> list[BatchResult]:
        snapshots: dict[str, Task] = {}
        for operation in operations:
            if operation.task_id in snapshots:
                continue
            task = await self.tasks.find_by_id(operation.task_id)
            if task is not None:
                snapshots[operation.task_id] = task.copy()

        state = await self.state.get()
        state_snapshot = state.copy() if state is not None else None

        results: list[BatchResult] = []

        async def restore_state() -> None:
            if state_snapshot is None:
                return
            restored = state_snapshot.copy()
            restored.updated_at = self.clock.now()
            await self.state.save(restored)

        steps = [Step(name="workflow-state", apply=_noop, compensate=restore_state)]
        for index, operation in enumerate(operations):
            steps.append(
                Step(
                    name=f"{index}:{operation.action.value}:{operation.task_id}",
                    apply=self._recording(operation, results),
                    compensate=self._restorer(snapshots.get(operation.task_id)),
                )
            )

        try:
            await run_steps(steps)
        except StepsRolledBackError as e:
            log.error(
                "batch_rolled_back",
                failed_step=e.failed_step,
                restored=len(snapshots),
                compensation_errors=list(e.compensation_errors),
            )
            raise BatchOperationError(e.cause, results) from e.cause
        return results

    def _recording(self, operation: BatchOperation, results: list[BatchResult]) -> Callable[[], Awaitable[None]]:
        async def apply() -> None:
            try:
                await self.execute(operation)
            except Exception as e:
                results.append(_failure(operation, e))
                raise
            results.append(BatchResult(task_id=operation.task_id, action=operation.action, success=True))

        return apply

    def _restorer(self, snapshot: Task | None) -> Callable[[], Awaitable[None]] | None:
        if snapshot is None:
            return None

        async def compensate() -> None:
            restored = snapshot.copy()
            await self.tasks.save(restored)
            if self.on_restore is not None:
                await self.on_restore(restored)

        return compensate


async def _noop() -> None:
    return None
