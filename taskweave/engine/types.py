"""Type definitions for persisted documents.

These TypedDicts describe the JSON documents kept in the workspace data
directory, enabling static type checking for dictionary access.

Example:
    An index document::

        index: TaskIndex = {
            "version": "1.0.0",
            "updatedAt": "2024-01-15T10:30:00+00:00",
            "metadata": {"projectGoal": "Ship login", "languageConfig": None},
            "tasks": {
                "auth.login": {
                    "status": "pending",
                    "priority": 1,
                    "module": "auth",
                    "description": "Login form",
                    "filePath": "auth/login.md",
                    "dependencies": ["setup.init"],
                }
            },
        }
"""

from typing import Any, NotRequired, TypedDict

INDEX_VERSION = "1.0.0"


class TaskIndexEntry(TypedDict):
    """Denormalized view of one task, kept in sync with its document."""

    status: str
    priority: int
    module: str
    description: str
    filePath: str
    """Document path relative to the tasks directory."""

    dependencies: NotRequired[list[str]]
    """Omitted when the task has no dependencies."""

    estimatedMinutes: NotRequired[int]


class IndexMetadata(TypedDict):
    """Project-level metadata stored alongside the index."""

    projectGoal: str
    languageConfig: NotRequired[Any]


class TaskIndex(TypedDict):
    """The ``tasks/index.json`` document."""

    version: str
    updatedAt: str
    metadata: IndexMetadata
    tasks: dict[str, TaskIndexEntry]


class StateDocument(TypedDict):
    """The ``state.json`` document."""

    phase: str
    currentTask: str | None
    prd: Any
    errors: list[Any]
    startedAt: str
    updatedAt: str
