"""Scheduling and batch execution engine.

Key Components:
    - scheduler: Pure selection of the next ready task, with cycle detection
    - batch: Batch coordinator and the ordered steps-with-compensation runner

Type Definitions:
    - TaskIndex: TypedDict for ``tasks/index.json``
    - TaskIndexEntry: TypedDict for one index entry
    - StateDocument: TypedDict for ``state.json``

Example:
    >>> from taskweave.engine.scheduler import schedule
    >>> decision = schedule(await repo.find_all())
"""

from taskweave.engine.types import (
    IndexMetadata,
    StateDocument,
    TaskIndex,
    TaskIndexEntry,
)

__all__ = [
    "IndexMetadata",
    "StateDocument",
    "TaskIndex",
    "TaskIndexEntry",
]
