"""Tests for the click CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskweave.exceptions import DependencyNotMetError, TaskweaveError
from taskweave.main import cli, exit_code_for


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def invoke(runner: CliRunner, tmp_path: Path):
    """Run the CLI against a temporary workspace."""

    def _invoke(*args: str):
        return runner.invoke(cli, ["--workspace", str(tmp_path), "--log-level", "CRITICAL", *args])

    return _invoke


def create(invoke, task_id: str, *extra: str):
    module = task_id.split(".", 1)[0]
    return invoke("tasks", "create", "--id", task_id, "--module", module, "--description", f"Task {task_id}", *extra)


class TestTasksCommands:
    """Tests for the tasks group."""

    def test_init_records_project_goal(self, invoke):
        result = invoke("tasks", "init", "--project-goal", "Ship login", "--language", "python")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["metadata"] == {
            "projectGoal": "Ship login",
            "languageConfig": {"language": "python", "framework": None},
        }

    def test_init_without_language_omits_language_config(self, invoke, tmp_path):
        result = invoke("tasks", "init", "--project-goal", "Ship login")

        assert json.loads(result.stdout)["metadata"] == {"projectGoal": "Ship login"}
        index = json.loads((tmp_path / ".taskweave" / "tasks" / "index.json").read_text())
        assert "languageConfig" not in index["metadata"]

    def test_create_and_get(self, invoke, tmp_path):
        result = create(invoke, "auth.login", "--criteria", "Renders", "--criteria", "Submits", "--priority", "2")

        assert result.exit_code == 0
        assert (tmp_path / ".taskweave" / "tasks" / "auth" / "login.md").exists()

        task = json.loads(invoke("tasks", "get", "auth.login").stdout)
        assert task["priority"] == 2
        assert task["acceptanceCriteria"] == ["Renders", "Submits"]

    def test_get_missing_task(self, invoke):
        result = invoke("tasks", "get", "auth.nothing")

        assert result.exit_code == 3
        assert json.loads(result.stderr)["code"] == "NOT_FOUND"

    def test_invalid_input(self, invoke):
        result = invoke("tasks", "create", "--id", "login", "--module", "auth", "--description", "Login")

        assert result.exit_code == 2
        assert json.loads(result.stderr)["code"] == "VALIDATION_ERROR"

    def test_duplicate(self, invoke):
        create(invoke, "auth.login")

        result = create(invoke, "auth.login")

        assert result.exit_code == 6

    def test_next_start_done_flow(self, invoke):
        create(invoke, "setup.init")
        create(invoke, "auth.login", "--dependencies", "setup.init")

        first = json.loads(invoke("tasks", "next").stdout)
        assert first["task"]["id"] == "setup.init"
        assert first["reason"] == "ready"

        blocked = invoke("tasks", "start", "auth.login")
        assert blocked.exit_code == 4

        assert invoke("tasks", "start", "setup.init").exit_code == 0
        done = json.loads(invoke("tasks", "done", "setup.init", "--duration", "25m").stdout)
        assert done["status"] == "completed"

        second = json.loads(invoke("tasks", "next").stdout)
        assert second["task"]["id"] == "auth.login"

    def test_next_reports_cycles(self, invoke):
        create(invoke, "a.x", "--dependencies", "a.y")
        create(invoke, "a.y", "--dependencies", "a.x")

        data = json.loads(invoke("tasks", "next").stdout)

        assert data["task"] is None
        assert data["reason"] == "cycle"
        assert data["cycles"] == [["a.x", "a.y"]]

    def test_list_with_filters(self, invoke):
        create(invoke, "setup.init")
        create(invoke, "auth.login", "--dependencies", "setup.init")

        data = json.loads(invoke("tasks", "list", "--ready").stdout)

        assert [t["id"] for t in data["tasks"]] == ["setup.init"]
        assert data["total"] == 1

    def test_fail_requires_in_progress(self, invoke):
        create(invoke, "setup.init")

        result = invoke("tasks", "fail", "setup.init", "--reason", "broken")

        assert result.exit_code == 7

    def test_atomic_batch_rollback(self, invoke):
        create(invoke, "setup.init")
        operations = json.dumps(
            [{"action": "start", "task_id": "setup.init"}, {"action": "start", "task_id": "setup.missing"}]
        )

        result = invoke("tasks", "batch", "--operations", operations, "--atomic")

        assert result.exit_code == 1
        error = json.loads(result.stderr)
        assert error["code"] == "BATCH_ROLLED_BACK"
        assert [r["success"] for r in error["results"]] == [True, False]
        task = json.loads(invoke("tasks", "get", "setup.init").stdout)
        assert task["status"] == "pending"

    def test_batch_rejects_non_list(self, invoke):
        result = invoke("tasks", "batch", "--operations", '{"action": "start"}')

        assert result.exit_code == 2


class TestStateCommands:
    """Tests for the state group."""

    def test_get_without_state(self, invoke):
        result = invoke("state", "get")

        assert json.loads(result.stdout) == {"phase": "none"}

    def test_init_and_update(self, invoke):
        invoke("state", "init")

        result = invoke("state", "update", "--phase", "breakdown", "--task", "auth.login", "--prd", '{"title": "x"}')

        data = json.loads(result.stdout)
        assert data["phase"] == "breakdown"
        assert data["currentTask"] == "auth.login"
        assert data["prd"] == {"title": "x"}

    def test_invalid_transition(self, invoke):
        invoke("state", "init")

        result = invoke("state", "update", "--phase", "complete")

        assert result.exit_code == 7
        assert "breakdown" in json.loads(result.stderr)["suggestion"]

    def test_update_without_state(self, invoke):
        assert invoke("state", "update", "--clear-task").exit_code == 3

    def test_clear_blocked_then_forced(self, invoke):
        invoke("state", "init", "--phase", "implement")

        blocked = json.loads(invoke("state", "clear").stdout)
        forced = json.loads(invoke("state", "clear", "--force").stdout)

        assert blocked["blocked"] is True
        assert forced == {"cleared": True}

    def test_archive_forced(self, invoke, tmp_path):
        invoke("state", "init")
        create(invoke, "auth.login")

        data = json.loads(invoke("state", "archive", "--force").stdout)

        assert data["archived"] is True
        assert (tmp_path / ".taskweave" / data["archivePath"] / "state.json").exists()


class TestGlobalOptions:
    """Tests for status, config loading and exit codes."""

    def test_status(self, invoke):
        create(invoke, "auth.login")

        data = json.loads(invoke("status").stdout)

        assert data["overall"]["total"] == 1
        assert data["currentPhase"] == "none"

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "status"])

        assert result.exit_code == 2
        assert json.loads(result.stderr)["code"] == "CONFIGURATION_ERROR"

    def test_config_file_locates_workspace(self, runner, tmp_path):
        config = tmp_path / "taskweave.yaml"
        config.write_text(f"workspace:\n  root: {tmp_path}\n  data_dir: .tw\n")

        result = runner.invoke(cli, ["--config", str(config), "state", "init"])

        assert result.exit_code == 0
        assert (tmp_path / ".tw" / "state.json").exists()

    def test_exit_codes(self):
        assert exit_code_for(DependencyNotMetError("a.b", ["c.d"])) == 4
        assert exit_code_for(TaskweaveError("x")) == 1
