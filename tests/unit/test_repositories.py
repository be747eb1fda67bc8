"""Tests for the index, task and state repositories."""

import json
from datetime import UTC, datetime

import pytest

from taskweave.enums import Phase, SortKey, TaskStatus
from taskweave.exceptions import AlreadyExistsError, ParseError, StateNotFoundError
from taskweave.models.domain import WorkflowState
from taskweave.repositories.index_repository import IndexRepository
from taskweave.repositories.state_repository import StateRepository
from taskweave.repositories.task_repository import TaskFilter, TaskRepository
from taskweave.storage.store import FileStore

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


def entry(status: str = "pending", module: str = "auth") -> dict:
    return {"status": status, "priority": 1, "module": module, "description": "d", "filePath": f"{module}/x.md"}


@pytest.fixture
def index_repo(store: FileStore, clock) -> IndexRepository:
    return IndexRepository(store, clock=clock)


async def seed(task_repo: TaskRepository, make_task) -> None:
    """Create a small project: setup.init done, auth.login ready, auth.logout waiting."""
    await task_repo.create(make_task("setup.init", status=TaskStatus.COMPLETED, estimated_minutes=10))
    await task_repo.create(make_task("auth.login", priority=2, dependencies=["setup.init"], estimated_minutes=45))
    await task_repo.create(make_task("auth.logout", priority=0, dependencies=["auth.login"], estimated_minutes=5))


class TestIndexRepository:
    """Tests for IndexRepository."""

    @pytest.mark.asyncio
    async def test_read_missing_returns_empty_index(self, index_repo):
        index = await index_repo.read()

        assert index["tasks"] == {}
        assert index["metadata"] == {"projectGoal": ""}
        assert index["version"] == "1.0.0"

    @pytest.mark.asyncio
    async def test_upsert_and_remove(self, index_repo):
        await index_repo.upsert_task("auth.login", entry())
        await index_repo.upsert_task("auth.logout", entry(status="completed"))

        assert await index_repo.has_task("auth.login")
        assert await index_repo.task_ids() == ["auth.login", "auth.logout"]
        assert await index_repo.task_ids_by_status("completed") == ["auth.logout"]

        assert await index_repo.remove_task("auth.login")
        assert not await index_repo.remove_task("auth.login")
        assert await index_repo.task_ids() == ["auth.logout"]

    @pytest.mark.asyncio
    async def test_timestamps_come_from_clock(self, index_repo, clock):
        assert (await index_repo.read())["updatedAt"] == clock.now().isoformat()

        clock.advance(90)
        await index_repo.upsert_task("auth.login", entry())

        assert (await index_repo.read())["updatedAt"] == clock.now().isoformat()

    @pytest.mark.asyncio
    async def test_update_metadata_leaves_unspecified_fields(self, index_repo):
        await index_repo.update_metadata(project_goal="Ship login", language_config={"language": "python"})

        index = await index_repo.update_metadata(project_goal="Ship logout")

        assert index["metadata"] == {"projectGoal": "Ship logout", "languageConfig": {"language": "python"}}

    @pytest.mark.asyncio
    async def test_invalid_json_raises_parse_error(self, index_repo, store):
        await store.write("tasks/index.json", "{not json")

        with pytest.raises(ParseError) as exc_info:
            await index_repo.read()
        assert exc_info.value.path == "tasks/index.json"

    @pytest.mark.asyncio
    async def test_index_without_tasks_mapping(self, index_repo, store):
        await store.write("tasks/index.json", json.dumps({"version": "1.0.0"}))

        with pytest.raises(ParseError, match="tasks mapping"):
            await index_repo.read()


class TestTaskRepositoryWrites:
    """Tests for create/save/delete."""

    @pytest.mark.asyncio
    async def test_create_writes_document_and_index(self, task_repo, store, make_task):
        await task_repo.create(make_task("auth.login", dependencies=["setup.init"]))

        assert await store.exists("tasks/auth/login.md")
        index = await task_repo.index.read()
        assert index["tasks"]["auth.login"]["filePath"] == "auth/login.md"
        assert index["tasks"]["auth.login"]["dependencies"] == ["setup.init"]

    @pytest.mark.asyncio
    async def test_create_duplicate_raises(self, task_repo, make_task):
        await task_repo.create(make_task("auth.login"))

        with pytest.raises(AlreadyExistsError) as exc_info:
            await task_repo.create(make_task("auth.login", description="Again"))
        assert exc_info.value.entity_id == "auth.login"

    @pytest.mark.asyncio
    async def test_save_refreshes_index(self, task_repo, make_task):
        task = make_task("auth.login")
        await task_repo.create(task)

        task.start(NOW)
        await task_repo.save(task)

        assert (await task_repo.status_map()) == {"auth.login": TaskStatus.IN_PROGRESS}
        loaded = await task_repo.find_by_id("auth.login")
        assert loaded.started_at == NOW

    @pytest.mark.asyncio
    async def test_minimal_task_reads_back_unchanged(self, task_repo, make_task):
        task = make_task("setup.init")
        await task_repo.create(task)

        loaded = await task_repo.find_by_id("setup.init")

        assert loaded == task
        assert loaded.dependencies == []
        assert loaded.notes is None

    @pytest.mark.asyncio
    async def test_find_by_id_missing(self, task_repo):
        assert await task_repo.find_by_id("auth.nothing") is None

    @pytest.mark.asyncio
    async def test_delete(self, task_repo, store, make_task):
        await task_repo.create(make_task("auth.login"))

        assert await task_repo.delete("auth.login")
        assert not await task_repo.delete("auth.login")
        assert not await store.exists("tasks/auth/login.md")
        assert await task_repo.count() == 0


class TestTaskRepositoryQueries:
    """Tests for find_all filtering, sorting and pagination."""

    @pytest.mark.asyncio
    async def test_find_all_in_creation_order(self, task_repo, make_task):
        await seed(task_repo, make_task)

        tasks = await task_repo.find_all()

        assert [t.id for t in tasks] == ["setup.init", "auth.login", "auth.logout"]

    @pytest.mark.asyncio
    async def test_filter_by_status_and_module(self, task_repo, make_task):
        await seed(task_repo, make_task)

        pending = await task_repo.find_all(TaskFilter(status=TaskStatus.PENDING))
        auth = await task_repo.find_all(TaskFilter(module="auth"))

        assert [t.id for t in pending] == ["auth.login", "auth.logout"]
        assert [t.id for t in auth] == ["auth.login", "auth.logout"]

    @pytest.mark.asyncio
    async def test_filter_by_dependencies_and_priority(self, task_repo, make_task):
        await seed(task_repo, make_task)

        without = await task_repo.find_all(TaskFilter(has_dependencies=False))
        top = await task_repo.find_all(TaskFilter(priority=0))

        assert [t.id for t in without] == ["setup.init"]
        assert [t.id for t in top] == ["auth.logout"]

    @pytest.mark.asyncio
    async def test_ready_is_computed_against_all_tasks(self, task_repo, make_task):
        await seed(task_repo, make_task)

        ready = await task_repo.find_all(TaskFilter(module="auth", ready=True))

        assert [t.id for t in ready] == ["auth.login"]

    @pytest.mark.asyncio
    async def test_sort_and_paginate(self, task_repo, make_task):
        await seed(task_repo, make_task)

        by_priority = await task_repo.find_all(sort=SortKey.PRIORITY)
        by_estimate = await task_repo.find_all(sort=SortKey.ESTIMATED_MINUTES)
        page = await task_repo.find_all(sort=SortKey.PRIORITY, offset=1, limit=1)

        assert [t.id for t in by_priority] == ["auth.logout", "setup.init", "auth.login"]
        assert [t.id for t in by_estimate] == ["auth.logout", "setup.init", "auth.login"]
        assert [t.id for t in page] == ["setup.init"]

    @pytest.mark.asyncio
    async def test_count_ignores_pagination(self, task_repo, make_task):
        await seed(task_repo, make_task)

        assert await task_repo.count() == 3
        assert await task_repo.count(TaskFilter(status=TaskStatus.COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_missing_document_is_skipped(self, task_repo, store, make_task):
        await seed(task_repo, make_task)
        await store.remove("tasks/auth/login.md")

        tasks = await task_repo.find_all()

        assert [t.id for t in tasks] == ["setup.init", "auth.logout"]


class TestRebuildIndex:
    """Tests for index repair."""

    @pytest.mark.asyncio
    async def test_rebuild_recovers_lost_entries_and_keeps_metadata(self, task_repo, store, make_task):
        await seed(task_repo, make_task)
        await task_repo.index.update_metadata(project_goal="Ship login")
        index = await task_repo.index.read()
        index["tasks"] = {}
        await task_repo.index.write(index)

        count = await task_repo.rebuild_index()

        assert count == 3
        index = await task_repo.index.read()
        assert sorted(index["tasks"]) == ["auth.login", "auth.logout", "setup.init"]
        assert index["metadata"]["projectGoal"] == "Ship login"

    @pytest.mark.asyncio
    async def test_rebuild_skips_unparseable_documents(self, task_repo, store, make_task):
        await task_repo.create(make_task("auth.login"))
        await store.write("tasks/auth/broken.md", "no front matter")

        assert await task_repo.rebuild_index() == 1


class TestStateRepository:
    """Tests for StateRepository."""

    @pytest.mark.asyncio
    async def test_get_absent(self, state_repo):
        assert await state_repo.get() is None
        assert not await state_repo.exists()

    @pytest.mark.asyncio
    async def test_save_and_get(self, state_repo):
        state = WorkflowState.create(NOW, Phase.IMPLEMENT)

        await state_repo.save(state)

        assert await state_repo.get() == state

    @pytest.mark.asyncio
    async def test_update_applies_mutation(self, state_repo):
        await state_repo.save(WorkflowState.create(NOW))

        updated = await state_repo.update(lambda s: s.set_current_task("auth.login", NOW))

        assert updated.current_task == "auth.login"
        assert (await state_repo.get()).current_task == "auth.login"

    @pytest.mark.asyncio
    async def test_update_absent_raises(self, state_repo):
        with pytest.raises(StateNotFoundError):
            await state_repo.update(lambda s: None)

    @pytest.mark.asyncio
    async def test_clear(self, state_repo):
        await state_repo.save(WorkflowState.create(NOW))

        assert await state_repo.clear()
        assert not await state_repo.clear()

    @pytest.mark.asyncio
    async def test_corrupt_state_raises_parse_error(self, state_repo, store):
        await store.write("state.json", "[1, 2]")

        with pytest.raises(ParseError, match="object"):
            await state_repo.get()
