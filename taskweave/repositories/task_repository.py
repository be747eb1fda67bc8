"""
Task persistence with a denormalized index.

Tasks are stored one document per task, partitioned by module, next to an
index used for listing and filtering without opening every document::

    tasks/
        index.json
        auth/
            login.md        # task "auth.login"
        setup/
            init.md         # task "setup.init"

Consistency:
    Every read and write of a document/index pair happens under one
    repository-wide ``asyncio.Lock``, so within a process no caller can
    observe an index entry that disagrees with its document. Documents are
    written before the index; if a process dies between the two writes,
    :meth:`TaskRepository.rebuild_index` re-derives the index from disk.

Example:
    >>> repo = TaskRepository(FileStore(".taskweave"))
    >>> await repo.create(Task(id="auth.login", module="auth", description="Login"))
    >>> ready = await repo.find_all(TaskFilter(ready=True))
"""

import asyncio
from dataclasses import dataclass

import structlog

from taskweave.engine.types import TaskIndex, TaskIndexEntry
from taskweave.enums import SortKey, TaskStatus
from taskweave.exceptions import AlreadyExistsError, ParseError
from taskweave.models.domain import Task
from taskweave.repositories.index_repository import IndexRepository
from taskweave.storage.store import DurableStore
from taskweave.storage.task_document import parse_task, render_task
from taskweave.utils.clock import Clock

log = structlog.get_logger(__name__)

TASKS_DIR = "tasks"


@dataclass
class TaskFilter:
    """Criteria for :meth:`TaskRepository.find_all`. Unset fields match all."""

    status: TaskStatus | None = None
    module: str | None = None
    priority: int | None = None
    has_dependencies: bool | None = None
    ready: bool | None = None


def _entry_for(task: Task, file_path: str) -> TaskIndexEntry:
    entry: TaskIndexEntry = {
        "status": task.status.value,
        "priority": task.priority,
        "module": task.module,
        "description": task.description,
        "filePath": file_path,
    }
    if task.dependencies:
        entry["dependencies"] = list(task.dependencies)
    if task.estimated_minutes is not None:
        entry["estimatedMinutes"] = task.estimated_minutes
    return entry


def _is_ready(entry: TaskIndexEntry, entries: dict[str, TaskIndexEntry]) -> bool:
    if entry["status"] != TaskStatus.PENDING.value:
        return False
    for dep in entry.get("dependencies", []):
        dep_entry = entries.get(dep)
        if dep_entry is None or dep_entry["status"] != TaskStatus.COMPLETED.value:
            return False
    return True


def _matches(task_filter: TaskFilter, entry: TaskIndexEntry, entries: dict[str, TaskIndexEntry]) -> bool:
    if task_filter.status is not None and entry["status"] != task_filter.status.value:
        return False
    if task_filter.module is not None and entry["module"] != task_filter.module:
        return False
    if task_filter.priority is not None and entry["priority"] != task_filter.priority:
        return False
    if task_filter.has_dependencies is not None and bool(entry.get("dependencies")) != task_filter.has_dependencies:
        return False
    if task_filter.ready is not None and _is_ready(entry, entries) != task_filter.ready:
        return False
    return True


def _sort_value(entry: TaskIndexEntry, sort: SortKey) -> int | str:
    if sort == SortKey.PRIORITY:
        return entry["priority"]
    if sort == SortKey.STATUS:
        return entry["status"]
    return entry.get("estimatedMinutes") or 0


class TaskRepository:
    """CRUD over task documents, keeping the index in step."""

    def __init__(self, store: DurableStore, tasks_dir: str = TASKS_DIR, clock: Clock | None = None) -> None:
        self.store = store
        self.tasks_dir = tasks_dir
        self.index = IndexRepository(store, f"{tasks_dir}/index.json", clock=clock)
        self._lock = asyncio.Lock()

    @staticmethod
    def relative_path(task: Task) -> str:
        """Document path relative to the tasks directory."""
        prefix = f"{task.module}."
        name = task.id[len(prefix) :] if task.id.startswith(prefix) else task.id
        return f"{task.module}/{name}.md"

    async def create(self, task: Task) -> None:
        """Persist a new task.

        Raises:
            AlreadyExistsError: If a task with the same id exists.
        """
        async with self._lock:
            index = await self.index.read()
            file_path = self.relative_path(task)
            if task.id in index["tasks"] or await self.store.exists(f"{self.tasks_dir}/{file_path}"):
                raise AlreadyExistsError(
                    f"Task already exists: {task.id}",
                    entity_id=task.id,
                    suggestion="Use a different id or update the existing task",
                )
            await self._write(task, file_path, index)
        log.debug("task_created", task_id=task.id, path=file_path)

    async def save(self, task: Task) -> None:
        """Overwrite a task's document and refresh its index entry."""
        async with self._lock:
            index = await self.index.read()
            file_path = self.relative_path(task)
            previous = index["tasks"].get(task.id)
            await self._write(task, file_path, index)
            if previous is not None and previous.get("filePath") not in (None, file_path):
                await self.store.remove(f"{self.tasks_dir}/{previous['filePath']}")
        log.debug("task_saved", task_id=task.id, status=task.status.value)

    async def find_by_id(self, task_id: str) -> Task | None:
        """Load a task, or None when it does not exist."""
        async with self._lock:
            index = await self.index.read()
            entry = index["tasks"].get(task_id)
            if entry is None:
                return None
            return await self._load(task_id, entry)

    async def find_all(
        self,
        task_filter: TaskFilter | None = None,
        offset: int = 0,
        limit: int | None = None,
        sort: SortKey | None = None,
    ) -> list[Task]:
        """Tasks matching ``task_filter``, in index order unless sorted.

        Sorting is stable, so ties keep index (creation) order. Pagination
        applies after filtering and sorting.
        """
        async with self._lock:
            index = await self.index.read()
            ids = self._select(index, task_filter, sort)
            page = ids[offset : offset + limit if limit is not None else None]

            tasks = []
            for task_id in page:
                task = await self._load(task_id, index["tasks"][task_id])
                if task is not None:
                    tasks.append(task)
            return tasks

    async def count(self, task_filter: TaskFilter | None = None) -> int:
        async with self._lock:
            index = await self.index.read()
            return len(self._select(index, task_filter, None))

    async def status_map(self) -> dict[str, TaskStatus]:
        """Status of every indexed task, read from the index alone."""
        async with self._lock:
            index = await self.index.read()
            return {task_id: TaskStatus(entry["status"]) for task_id, entry in index["tasks"].items()}

    async def delete(self, task_id: str) -> bool:
        """Remove a task's document and index entry. Unknown ids are a no-op."""
        async with self._lock:
            index = await self.index.read()
            entry = index["tasks"].pop(task_id, None)
            if entry is None:
                return False
            await self.store.remove(f"{self.tasks_dir}/{entry['filePath']}")
            await self.index.write(index)
        log.info("task_deleted", task_id=task_id)
        return True

    async def rebuild_index(self) -> int:
        """Re-derive every index entry from the documents on disk.

        Metadata is preserved. Unparseable documents are skipped with a
        warning.

        Returns:
            Number of tasks indexed.
        """
        async with self._lock:
            index = await self.index.read()
            index["tasks"] = {}
            for module in await self.store.list(self.tasks_dir):
                module_dir = f"{self.tasks_dir}/{module}"
                for name in await self.store.list(module_dir):
                    if not name.endswith(".md"):
                        continue
                    path = f"{module_dir}/{name}"
                    try:
                        task = parse_task(await self.store.read(path), path=path)
                    except ParseError as e:
                        log.warning("index_rebuild_skipped_document", path=path, error=e.message)
                        continue
                    index["tasks"][task.id] = _entry_for(task, f"{module}/{name}")
            await self.index.write(index)
        log.info("index_rebuilt", tasks=len(index["tasks"]))
        return len(index["tasks"])

    def _select(self, index: TaskIndex, task_filter: TaskFilter | None, sort: SortKey | None) -> list[str]:
        entries = index["tasks"]
        ids = [task_id for task_id, entry in entries.items() if task_filter is None or _matches(task_filter, entry, entries)]
        if sort is not None:
            ids.sort(key=lambda task_id: _sort_value(entries[task_id], sort))
        return ids

    async def _write(self, task: Task, file_path: str, index: TaskIndex) -> None:
        await self.store.write(f"{self.tasks_dir}/{file_path}", render_task(task))
        index["tasks"][task.id] = _entry_for(task, file_path)
        await self.index.write(index)

    async def _load(self, task_id: str, entry: TaskIndexEntry) -> Task | None:
        path = f"{self.tasks_dir}/{entry['filePath']}"
        if not await self.store.exists(path):
            log.warning("task_document_missing", task_id=task_id, path=path)
            return None
        return parse_task(await self.store.read(path), path=path)
