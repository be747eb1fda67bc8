"""Workflow state persistence (``state.json``)."""

import asyncio
import json
from collections.abc import Callable

import structlog

from taskweave.engine.types import StateDocument
from taskweave.exceptions import ParseError, StateNotFoundError
from taskweave.models.domain import WorkflowState
from taskweave.storage.store import DurableStore

log = structlog.get_logger(__name__)

STATE_PATH = "state.json"


class StateRepository:
    """Load and store the workflow state singleton.

    Writes go through the store's atomic replace, so a reader never sees a
    partially written document.
    """

    def __init__(self, store: DurableStore, path: str = STATE_PATH) -> None:
        self.store = store
        self.path = path
        self._lock = asyncio.Lock()

    async def exists(self) -> bool:
        return await self.store.exists(self.path)

    async def get(self) -> WorkflowState | None:
        async with self._lock:
            return await self._read()

    async def save(self, state: WorkflowState) -> None:
        async with self._lock:
            await self._write(state)

    async def update(self, mutate: Callable[[WorkflowState], None]) -> WorkflowState:
        """Apply ``mutate`` to the stored state and write it back in one step.

        Raises:
            StateNotFoundError: If no state has been written yet.
        """
        async with self._lock:
            state = await self._read()
            if state is None:
                raise StateNotFoundError()
            mutate(state)
            await self._write(state)
            return state

    async def clear(self) -> bool:
        """Delete the state document. Returns False when there was none."""
        async with self._lock:
            if not await self.store.exists(self.path):
                return False
            await self.store.remove(self.path)
        log.info("state_cleared")
        return True

    async def _read(self) -> WorkflowState | None:
        if not await self.store.exists(self.path):
            return None
        content = await self.store.read(self.path)
        try:
            data: StateDocument = json.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid state JSON: {e.msg}", path=self.path) from e
        if not isinstance(data, dict):
            raise ParseError("State document must be an object", path=self.path)
        try:
            return WorkflowState.from_dict(data)
        except ParseError as e:
            raise ParseError(e.message, path=self.path) from e

    async def _write(self, state: WorkflowState) -> None:
        await self.store.write(self.path, json.dumps(state.to_dict(), indent=2))
