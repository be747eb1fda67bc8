"""
Dependency-aware task selection.

Pure functions over a list of tasks, in repository (creation) order. A task
is *ready* when it is pending and every one of its dependencies exists and is
completed. The next task is the ready task with the lowest priority value;
ties go to the task encountered first.

When nothing is ready the scheduler reports why: the queue is exhausted, the
pending tasks are waiting on unfinished work, or they are starved by a
dependency cycle that will never resolve on its own.

Example:
    >>> decision = schedule(await repo.find_all())
    >>> if decision.reason is ScheduleReason.CYCLE:
    ...     print(decision.cycles)
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from taskweave.enums import ScheduleReason, TaskStatus
from taskweave.models.domain import Task

log = structlog.get_logger(__name__)


@dataclass
class ScheduleDecision:
    """Outcome of a scheduling pass.

    Attributes:
        task: The selected task, or None when nothing is ready.
        reason: Why ``task`` was or was not selected.
        blocked: Unmet dependency ids per pending task that is not ready.
        cycles: Dependency cycles among unfinished tasks, each listed in
            dependency order starting from its first-encountered member.
    """

    task: Task | None
    reason: ScheduleReason
    blocked: dict[str, list[str]] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)


def status_map(tasks: Sequence[Task]) -> dict[str, TaskStatus]:
    return {task.id: task.status for task in tasks}


def is_ready(task: Task, status_by_id: dict[str, TaskStatus]) -> bool:
    """Pending, with every dependency present and completed."""
    return task.is_ready(status_by_id)


def select_next_task(tasks: Sequence[Task]) -> Task | None:
    """The ready task with the lowest priority value, or None.

    ``min`` returns the first minimal element, which keeps selection stable
    on ties.
    """
    statuses = status_map(tasks)
    ready = [task for task in tasks if task.is_ready(statuses)]
    if not ready:
        return None
    return min(ready, key=lambda task: task.priority)


def find_dependency_cycles(tasks: Sequence[Task]) -> list[list[str]]:
    """Dependency cycles among tasks that are not completed or failed.

    A task that depends on itself is reported as a one-element cycle. Each
    distinct set of members is reported once.
    """
    graph = {task.id: task.dependencies for task in tasks if not task.is_terminal()}
    cycles: list[list[str]] = []
    seen: set[frozenset[str]] = set()
    visited: set[str] = set()

    for root in graph:
        if root in visited:
            continue

        # Explicit stack of (task id, remaining dependencies); ``path`` mirrors it.
        visited.add(root)
        path = [root]
        on_path = {root}
        stack = [(root, iter(graph[root]))]

        while stack:
            task_id, deps = stack[-1]
            dep_id = next(deps, None)
            if dep_id is None:
                stack.pop()
                path.pop()
                on_path.remove(task_id)
                continue
            if dep_id not in graph:
                continue
            if dep_id in on_path:
                cycle = path[path.index(dep_id) :]
                members = frozenset(cycle)
                if members not in seen:
                    seen.add(members)
                    cycles.append(cycle)
            elif dep_id not in visited:
                visited.add(dep_id)
                path.append(dep_id)
                on_path.add(dep_id)
                stack.append((dep_id, iter(graph[dep_id])))

    return cycles


def schedule(tasks: Sequence[Task]) -> ScheduleDecision:
    """Select the next task and explain the outcome."""
    selected = select_next_task(tasks)
    if selected is not None:
        return ScheduleDecision(task=selected, reason=ScheduleReason.READY)

    statuses = status_map(tasks)
    blocked = {
        task.id: task.unmet_dependencies(statuses) for task in tasks if task.status == TaskStatus.PENDING
    }
    if not blocked:
        return ScheduleDecision(task=None, reason=ScheduleReason.EXHAUSTED)

    cycles = find_dependency_cycles(tasks)
    if cycles:
        log.debug("schedule_starved_by_cycle", cycles=cycles)
        return ScheduleDecision(task=None, reason=ScheduleReason.CYCLE, blocked=blocked, cycles=cycles)
    return ScheduleDecision(task=None, reason=ScheduleReason.WAITING, blocked=blocked)
