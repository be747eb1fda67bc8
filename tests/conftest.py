"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import structlog

from taskweave.config.settings import TaskweaveSettings
from taskweave.models.domain import Task
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskRepository
from taskweave.resilience.retry import RetryConfig
from taskweave.services.state_service import StateService
from taskweave.services.task_service import TaskService
from taskweave.storage.store import FileStore


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by CLI invocations."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Temporary workspace data directory."""
    path = tmp_path / ".taskweave"
    path.mkdir()
    return path


@pytest.fixture
def store(data_dir: Path) -> FileStore:
    """FileStore on the temporary data directory, retrying without delay."""
    return FileStore(data_dir, retry_config=RetryConfig(initial_delay=0.0, max_delay=0.0))


@pytest.fixture
def task_repo(store: FileStore, clock: FakeClock) -> TaskRepository:
    return TaskRepository(store, clock=clock)


@pytest.fixture
def state_repo(store: FileStore) -> StateRepository:
    return StateRepository(store)


@pytest.fixture
def task_service(task_repo: TaskRepository, state_repo: StateRepository, store: FileStore, clock: FakeClock) -> TaskService:
    return TaskService(task_repo, state_repo, store, clock=clock)


@pytest.fixture
def state_service(state_repo: StateRepository, store: FileStore, clock: FakeClock) -> StateService:
    return StateService(state_repo, store, clock=clock)


@pytest.fixture
def settings(tmp_path: Path) -> TaskweaveSettings:
    """Settings pointing at the temporary workspace."""
    return TaskweaveSettings(workspace={"root": str(tmp_path), "data_dir": ".taskweave"})


@pytest.fixture
def make_task():
    """Factory fixture for creating tasks."""

    def _make_task(task_id: str, priority: int = 1, dependencies: list[str] | None = None, **kwargs) -> Task:
        module = task_id.split(".", 1)[0]
        return Task(
            id=task_id,
            module=module,
            description=kwargs.pop("description", f"Task {task_id}"),
            priority=priority,
            dependencies=dependencies or [],
            **kwargs,
        )

    return _make_task
