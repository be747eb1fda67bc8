"""Project progress summary."""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from taskweave.engine.scheduler import find_dependency_cycles
from taskweave.enums import TaskStatus
from taskweave.models.domain import Task
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskRepository

log = structlog.get_logger(__name__)


@dataclass
class ProgressStats:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    completion_percentage: int = 0

    @classmethod
    def of(cls, tasks: Sequence[Task]) -> "ProgressStats":
        counts = Counter(task.status for task in tasks)
        total = len(tasks)
        return cls(
            total=total,
            pending=counts[TaskStatus.PENDING],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            completed=counts[TaskStatus.COMPLETED],
            failed=counts[TaskStatus.FAILED],
            blocked=counts[TaskStatus.BLOCKED],
            completion_percentage=round(counts[TaskStatus.COMPLETED] / total * 100) if total else 0,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "inProgress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "completionPercentage": self.completion_percentage,
        }


@dataclass
class ProjectStatus:
    """Snapshot of task progress and workflow position."""

    overall: ProgressStats
    by_module: dict[str, ProgressStats] = field(default_factory=dict)
    current_phase: str = "none"
    current_task: str | None = None
    started_at: str | None = None
    updated_at: str | None = None
    dependency_cycles: list[list[str]] = field(default_factory=list)

    @property
    def has_active_tasks(self) -> bool:
        return self.overall.total > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.to_dict(),
            "byModule": [{"module": module, **stats.to_dict()} for module, stats in self.by_module.items()],
            "currentPhase": self.current_phase,
            "currentTask": self.current_task,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "hasActiveTasks": self.has_active_tasks,
            "dependencyCycles": self.dependency_cycles,
        }


class StatusService:
    def __init__(self, tasks: TaskRepository, state: StateRepository) -> None:
        self.tasks = tasks
        self.state = state

    async def get_project_status(self) -> ProjectStatus:
        """Counts by status, overall and per module, plus the workflow position.

        Modules are listed in order of first appearance.
        """
        tasks = await self.tasks.find_all()
        state = await self.state.get()

        modules: dict[str, list[Task]] = {}
        for task in tasks:
            modules.setdefault(task.module, []).append(task)

        status = ProjectStatus(
            overall=ProgressStats.of(tasks),
            by_module={module: ProgressStats.of(module_tasks) for module, module_tasks in modules.items()},
            dependency_cycles=find_dependency_cycles(tasks),
        )
        if state is not None:
            status.current_phase = state.phase.value
            status.current_task = state.current_task
            status.started_at = state.started_at.isoformat()
            status.updated_at = state.updated_at.isoformat()

        log.debug("project_status_calculated", total_tasks=status.overall.total)
        return status
