"""Task index persistence (``tasks/index.json``).

The index is a denormalized listing of every task (status, priority, module,
description, document path, dependencies) plus project metadata. It is
rewritten whole on every change; the task repository keeps it consistent
with the individual task documents.

The repository does not lock; :class:`~taskweave.repositories.task_repository.TaskRepository`
serialises index access together with document access.
"""

import json
from datetime import datetime
from typing import Any

import structlog

from taskweave.engine.types import INDEX_VERSION, TaskIndex, TaskIndexEntry
from taskweave.exceptions import ParseError
from taskweave.storage.store import DurableStore
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

INDEX_PATH = "tasks/index.json"

_UNSET: Any = object()


def empty_index(now: datetime) -> TaskIndex:
    """A fresh index document with no tasks."""
    return {
        "version": INDEX_VERSION,
        "updatedAt": now.isoformat(),
        "metadata": {"projectGoal": ""},
        "tasks": {},
    }


class IndexRepository:
    """Read and write the task index through a durable store."""

    def __init__(self, store: DurableStore, path: str = INDEX_PATH, clock: Clock | None = None) -> None:
        self.store = store
        self.path = path
        self.clock = clock or SystemClock()

    async def read(self) -> TaskIndex:
        """Read the index, returning an empty one if it does not exist yet.

        Raises:
            ParseError: If the document is not valid JSON or lacks ``tasks``.
        """
        if not await self.store.exists(self.path):
            return empty_index(self.clock.now())

        content = await self.store.read(self.path)
        try:
            index = json.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid index JSON: {e.msg}", path=self.path) from e

        if not isinstance(index, dict) or not isinstance(index.get("tasks"), dict):
            raise ParseError("Index document has no tasks mapping", path=self.path)
        index.setdefault("version", INDEX_VERSION)
        index.setdefault("metadata", {"projectGoal": ""})
        return index  # type: ignore[no-any-return]

    async def write(self, index: TaskIndex) -> None:
        index["updatedAt"] = self.clock.now().isoformat()
        await self.store.write(self.path, json.dumps(index, indent=2))

    async def upsert_task(self, task_id: str, entry: TaskIndexEntry) -> None:
        index = await self.read()
        index["tasks"][task_id] = entry
        await self.write(index)

    async def remove_task(self, task_id: str) -> bool:
        """Drop an entry. Returns False when it was not present."""
        index = await self.read()
        if index["tasks"].pop(task_id, None) is None:
            return False
        await self.write(index)
        return True

    async def update_metadata(self, project_goal: str | None = None, language_config: Any = _UNSET) -> TaskIndex:
        """Update project metadata, leaving unspecified fields untouched."""
        index = await self.read()
        if project_goal is not None:
            index["metadata"]["projectGoal"] = project_goal
        if language_config is not _UNSET:
            index["metadata"]["languageConfig"] = language_config
        await self.write(index)
        log.info("index_metadata_updated", project_goal=index["metadata"].get("projectGoal"))
        return index

    async def has_task(self, task_id: str) -> bool:
        index = await self.read()
        return task_id in index["tasks"]

    async def task_ids(self) -> list[str]:
        index = await self.read()
        return list(index["tasks"])

    async def task_ids_by_status(self, status: str) -> list[str]:
        index = await self.read()
        return [task_id for task_id, entry in index["tasks"].items() if entry.get("status") == status]
