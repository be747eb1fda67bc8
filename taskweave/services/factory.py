"""Wiring of stores, repositories and services for one workspace."""

from dataclasses import dataclass

from taskweave.config.settings import TaskweaveSettings
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskRepository
from taskweave.services.healing_service import HealingService
from taskweave.services.state_service import StateService
from taskweave.services.status_service import StatusService
from taskweave.services.task_service import TaskService
from taskweave.storage.store import DurableStore, FileStore
from taskweave.utils.clock import Clock, SystemClock


@dataclass
class Services:
    """Services sharing one store and one set of repositories."""

    store: DurableStore
    tasks: TaskService
    state: StateService
    status: StatusService
    healing: HealingService


def create_services(
    settings: TaskweaveSettings,
    store: DurableStore | None = None,
    clock: Clock | None = None,
) -> Services:
    """Create the services for the workspace described by ``settings``.

    Args:
        settings: Loaded settings; ``workspace`` locates the data directory
        store: Store to use instead of a :class:`FileStore` on the data
            directory
        clock: Time source shared by every service

    Returns:
        A :class:`Services` bundle.
    """
    store = store or FileStore(settings.data_path, retry_config=settings.retry)
    clock = clock or SystemClock()

    task_repo = TaskRepository(store, clock=clock)
    state_repo = StateRepository(store)

    return Services(
        store=store,
        tasks=TaskService(task_repo, state_repo, store, clock=clock, defaults=settings.tasks),
        state=StateService(state_repo, store, clock=clock),
        status=StatusService(task_repo, state_repo),
        healing=HealingService(
            store,
            circuit_config=settings.circuit_breaker,
            retry_config=settings.retry,
            clock=clock,
        ),
    )
