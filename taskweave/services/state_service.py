"""
Workflow state operations.

The workflow state is a singleton per workspace. It is created once per
session, moved through the phases by the agent driving the workflow, and
archived together with the rest of the session's artifacts when the session
completes::

    .taskweave/archive/2024-01-15T10-30-00/
        state.json
        prd.md
        tasks/
        progress.log
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from taskweave.enums import Phase
from taskweave.models.domain import WorkflowState
from taskweave.repositories.state_repository import STATE_PATH, StateRepository
from taskweave.storage.store import DurableStore
from taskweave.utils.clock import Clock, SystemClock

log = structlog.get_logger(__name__)

ARCHIVE_DIR = "archive"
PRD_PATH = "prd.md"
TASKS_DIR = "tasks"
SESSION_ARTIFACTS = (STATE_PATH, PRD_PATH, TASKS_DIR, "progress.log", "debug.log")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()
"""Marks a :class:`StateUpdate` field that should be left untouched."""


@dataclass
class StateUpdate:
    """Changes applied to the workflow state in one write.

    ``current_task=None`` clears the pointer; leave it ``UNSET`` to keep it.
    """

    phase: Phase | None = None
    current_task: Any = UNSET
    prd: Any = UNSET
    add_error: Any = UNSET


@dataclass
class ClearResult:
    cleared: bool
    blocked: bool = False
    blocked_reason: str | None = None
    current_phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"cleared": self.cleared}
        if self.blocked:
            data.update(blocked=True, blockedReason=self.blocked_reason, currentPhase=self.current_phase)
        return data


@dataclass
class ArchiveResult:
    archived: bool
    archive_path: str | None = None
    files: list[str] = field(default_factory=list)
    blocked: bool = False
    blocked_reason: str | None = None
    current_phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"archived": self.archived, "archivePath": self.archive_path, "files": self.files}
        if self.blocked:
            data.update(blocked=True, blockedReason=self.blocked_reason, currentPhase=self.current_phase)
        return data


class StateService:
    """Create, update, clear and archive the workflow state."""

    def __init__(self, state: StateRepository, store: DurableStore, clock: Clock | None = None) -> None:
        self.state = state
        self.store = store
        self.clock = clock or SystemClock()

    async def get_state(self) -> WorkflowState | None:
        return await self.state.get()

    async def exists(self) -> bool:
        return await self.state.exists()

    async def initialize_state(self, phase: Phase = Phase.CLARIFY) -> WorkflowState:
        """Create the state in ``phase``.

        An existing state is returned untouched, so a resumed session never
        loses its progress.
        """
        existing = await self.state.get()
        if existing is not None:
            log.warning("state_already_initialized", phase=existing.phase.value)
            return existing

        state = WorkflowState.create(self.clock.now(), phase)
        await self.state.save(state)
        log.info("state_initialized", phase=phase.value)
        return state

    async def update_state(self, update: StateUpdate) -> WorkflowState:
        """Apply ``update`` atomically.

        Raises:
            StateNotFoundError: If the state has not been initialized.
            InvalidStateTransitionError: If the phase change is not allowed;
                nothing is written.
        """
        now = self.clock.now()

        def apply(state: WorkflowState) -> None:
            if update.phase is not None:
                state.transition_to(update.phase, now)
            if update.current_task is not UNSET:
                state.set_current_task(update.current_task, now)
            if update.prd is not UNSET:
                state.set_prd(update.prd, now)
            if update.add_error is not UNSET:
                state.add_error(update.add_error, now)
            state.updated_at = now

        state = await self.state.update(apply)
        log.info("state_updated", phase=state.phase.value, current_task=state.current_task)
        return state

    async def set_current_task(self, task_id: str | None) -> WorkflowState:
        return await self.update_state(StateUpdate(current_task=task_id))

    async def clear_state(self, force: bool = False) -> ClearResult:
        """Delete the state.

        Refused (not an error) unless the workflow is complete or ``force``
        is set.
        """
        state = await self.state.get()
        if state is None:
            return ClearResult(cleared=False)

        if not force and not state.is_complete():
            log.warning("state_clear_blocked", phase=state.phase.value)
            return ClearResult(
                cleared=False,
                blocked=True,
                blocked_reason=f'Session is in "{state.phase.value}" phase. Use --force to clear an incomplete session.',
                current_phase=state.phase.value,
            )

        await self.state.clear()
        return ClearResult(cleared=True)

    async def archive_session(self, force: bool = False) -> ArchiveResult:
        """Move the session's artifacts into a timestamped archive directory.

        Refused (not an error) unless the workflow is complete or ``force``
        is set. A workspace with no state, PRD or tasks has nothing to
        archive.
        """
        present = [name for name in SESSION_ARTIFACTS if await self.store.exists(name)]
        if not any(name in present for name in (STATE_PATH, PRD_PATH, TASKS_DIR)):
            log.info("archive_nothing_to_do")
            return ArchiveResult(archived=False)

        state = await self.state.get()
        if state is not None and not force and not state.is_complete():
            log.warning("archive_blocked", phase=state.phase.value, hint="Use --force to archive anyway")
            return ArchiveResult(
                archived=False,
                blocked=True,
                blocked_reason=f'Session is in "{state.phase.value}" phase. Use --force to archive incomplete session.',
                current_phase=state.phase.value,
            )

        timestamp = self.clock.now().strftime("%Y-%m-%dT%H-%M-%S")
        archive_dir = f"{ARCHIVE_DIR}/{timestamp}"
        await self.store.ensure_dir(archive_dir)

        for name in present:
            await self.store.copy(name, f"{archive_dir}/{name}")
            log.debug("archived_artifact", name=name)

        for name in present:
            if name == STATE_PATH:
                await self.state.clear()
            else:
                await self.store.remove(name)

        log.info("session_archived", archive_dir=archive_dir, files=present)
        return ArchiveResult(archived=True, archive_path=archive_dir, files=present)
