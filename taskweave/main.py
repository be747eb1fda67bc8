"""CLI entry point for taskweave.

Every command prints JSON on stdout. Errors are printed as JSON objects
(``code``, ``message``, ``suggestion``) on stderr and mapped to exit codes.
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click

from taskweave.config.settings import TaskweaveSettings
from taskweave.enums import Phase, SortKey, TaskStatus
from taskweave.exceptions import BatchOperationError, ConfigurationError, TaskweaveError
from taskweave.repositories.task_repository import TaskFilter
from taskweave.services.factory import Services, create_services
from taskweave.services.state_service import UNSET, StateUpdate
from taskweave.services.task_service import TaskListOptions
from taskweave.utils.logging_config import configure_logging, get_logger

log = get_logger(__name__)

EXIT_CODES = {
    "VALIDATION_ERROR": 2,
    "CONFIGURATION_ERROR": 2,
    "NOT_FOUND": 3,
    "DEPENDENCY_NOT_MET": 4,
    "ALREADY_EXISTS": 6,
    "INVALID_STATE_TRANSITION": 7,
    "FILE_SYSTEM_ERROR": 8,
    "PARSE_ERROR": 9,
}


def exit_code_for(error: TaskweaveError) -> int:
    return EXIT_CODES.get(error.code, 1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: TaskweaveError, **extra: Any) -> None:
    click.echo(json.dumps({**error.to_dict(), **extra}, indent=2, default=str), err=True)
    sys.exit(exit_code_for(error))


def _run(ctx: click.Context, command: Callable[[Services], Awaitable[Any]]) -> None:
    """Run an async command against the workspace services and print its result."""
    services = create_services(ctx.obj["settings"])
    try:
        result = asyncio.run(command(services))
    except BatchOperationError as e:
        log.debug("batch_rolled_back", exc_info=True)
        _fail(e, results=[r.to_dict() for r in e.results])
        return
    except TaskweaveError as e:
        log.debug("command_error", code=e.code, exc_info=True)
        _fail(e)
        return
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    _echo_json(result)


def _parse_json_option(value: str | None, name: str) -> Any:
    if value is None:
        return UNSET
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e.msg}", param_hint=name) from e


@click.group()
@click.option("--config", "config_path", default=None, help="Path to a YAML configuration file")
@click.option("--workspace", default=None, help="Project root containing the data directory")
@click.option("--log-level", default=None, help="Logging level (defaults to the configured level)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, workspace: str | None, log_level: str | None) -> None:
    """taskweave: dependency-aware task queue and workflow state."""
    try:
        settings = TaskweaveSettings.from_yaml(config_path) if config_path else TaskweaveSettings()
    except ConfigurationError as e:
        configure_logging("ERROR")
        _fail(e)
        return

    if workspace is not None:
        settings.workspace.root = workspace

    configure_logging(log_level or settings.logging.level, settings.logging.json_output)
    ctx.obj = {"settings": settings}


# =============================================================================
# Tasks
# =============================================================================


@cli.group()
def tasks() -> None:
    """Create, schedule and transition tasks."""


@tasks.command("init")
@click.option("--project-goal", required=True, help="What the project is building")
@click.option("--language", default=None, help="Primary language")
@click.option("--framework", default=None, help="Primary framework")
@click.pass_context
def tasks_init(ctx: click.Context, project_goal: str, language: str | None, framework: str | None) -> None:
    """Initialize the task index with project metadata."""
    language_config = None
    if language or framework:
        language_config = {"language": language, "framework": framework}

    async def command(services: Services) -> Any:
        return {"metadata": await services.tasks.initialize(project_goal, language_config)}

    _run(ctx, command)


@tasks.command("create")
@click.option("--id", "task_id", required=True, help="Task id, prefixed by its module (auth.login)")
@click.option("--module", required=True, help="Module the task belongs to")
@click.option("--description", required=True, help="One-line description")
@click.option("--priority", type=int, default=None, help="Lower runs earlier")
@click.option("--estimated-minutes", type=int, default=None)
@click.option("--criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--dependencies", default="", help="Comma-separated task ids")
@click.option("--test-pattern", default=None, help="Glob of the tests that verify the task")
@click.pass_context
def tasks_create(
    ctx: click.Context,
    task_id: str,
    module: str,
    description: str,
    priority: int | None,
    estimated_minutes: int | None,
    criteria: tuple[str, ...],
    dependencies: str,
    test_pattern: str | None,
) -> None:
    """Create a pending task."""
    data = {
        "id": task_id,
        "module": module,
        "description": description,
        "priority": priority,
        "estimated_minutes": estimated_minutes,
        "acceptance_criteria": list(criteria),
        "dependencies": [dep for dep in dependencies.split(",") if dep.strip()],
        "test_pattern": test_pattern,
    }

    async def command(services: Services) -> Any:
        task = await services.tasks.create_task(data)
        return task.to_dict()

    _run(ctx, command)


@tasks.command("get")
@click.argument("task_id")
@click.pass_context
def tasks_get(ctx: click.Context, task_id: str) -> None:
    """Show one task."""

    async def command(services: Services) -> Any:
        return (await services.tasks.get_task(task_id)).to_dict()

    _run(ctx, command)


@tasks.command("list")
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option("--module", default=None)
@click.option("--priority", type=int, default=None)
@click.option("--has-dependencies/--no-dependencies", default=None)
@click.option("--ready", is_flag=True, default=False, help="Only tasks whose dependencies are completed")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--sort", type=click.Choice([k.value for k in SortKey]), default=SortKey.PRIORITY.value)
@click.pass_context
def tasks_list(
    ctx: click.Context,
    status: str | None,
    module: str | None,
    priority: int | None,
    has_dependencies: bool | None,
    ready: bool,
    limit: int,
    offset: int,
    sort: str,
) -> None:
    """List tasks with filters and pagination."""
    options = TaskListOptions(
        task_filter=TaskFilter(
            status=TaskStatus(status) if status else None,
            module=module,
            priority=priority,
            has_dependencies=has_dependencies,
            ready=True if ready else None,
        ),
        limit=limit,
        offset=offset,
        sort=SortKey(sort),
    )

    async def command(services: Services) -> Any:
        return (await services.tasks.list_tasks(options)).to_dict()

    _run(ctx, command)


@tasks.command("next")
@click.pass_context
def tasks_next(ctx: click.Context) -> None:
    """Show the next ready task, or why there is none."""

    async def command(services: Services) -> Any:
        decision = await services.tasks.explain_next_task()
        return {
            "task": decision.task.to_dict() if decision.task else None,
            "reason": decision.reason.value,
            "blocked": decision.blocked,
            "cycles": decision.cycles,
        }

    _run(ctx, command)


@tasks.command("start")
@click.argument("task_id")
@click.option("--ignore-dependencies", is_flag=True, help="Start even if dependencies are unfinished")
@click.pass_context
def tasks_start(ctx: click.Context, task_id: str, ignore_dependencies: bool) -> None:
    """Mark a task in progress."""

    async def command(services: Services) -> Any:
        task = await services.tasks.start_task(task_id, ignore_dependencies=ignore_dependencies)
        return task.to_dict()

    _run(ctx, command)


@tasks.command("done")
@click.argument("task_id")
@click.option("--duration", default=None, help="Time spent, e.g. 25m")
@click.pass_context
def tasks_done(ctx: click.Context, task_id: str, duration: str | None) -> None:
    """Mark a task completed."""

    async def command(services: Services) -> Any:
        return (await services.tasks.complete_task(task_id, duration)).to_dict()

    _run(ctx, command)


@tasks.command("fail")
@click.argument("task_id")
@click.option("--reason", required=True, help="Why the task failed")
@click.pass_context
def tasks_fail(ctx: click.Context, task_id: str, reason: str) -> None:
    """Mark a task failed."""

    async def command(services: Services) -> Any:
        return (await services.tasks.fail_task(task_id, reason)).to_dict()

    _run(ctx, command)


@tasks.command("batch")
@click.option("--operations", required=True, help='JSON list, e.g. [{"action": "start", "task_id": "auth.login"}]')
@click.option("--atomic", is_flag=True, help="Roll back every change if any operation fails")
@click.pass_context
def tasks_batch(ctx: click.Context, operations: str, atomic: bool) -> None:
    """Apply several start/done/fail operations."""
    parsed = _parse_json_option(operations, "--operations")
    if not isinstance(parsed, list):
        raise click.BadParameter("must be a JSON list", param_hint="--operations")

    async def command(services: Services) -> Any:
        results = await services.tasks.batch_operations(parsed, atomic=atomic)
        return {"atomic": atomic, "results": [r.to_dict() for r in results]}

    _run(ctx, command)


# =============================================================================
# Workflow state
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and move the workflow state."""


@state.command("get")
@click.pass_context
def state_get(ctx: click.Context) -> None:
    """Show the workflow state (phase "none" when uninitialized)."""

    async def command(services: Services) -> Any:
        current = await services.state.get_state()
        return current.to_dict() if current else {"phase": "none"}

    _run(ctx, command)


@state.command("init")
@click.option("--phase", type=click.Choice([p.value for p in Phase]), default=Phase.CLARIFY.value)
@click.pass_context
def state_init(ctx: click.Context, phase: str) -> None:
    """Create the workflow state if it does not exist."""

    async def command(services: Services) -> Any:
        return (await services.state.initialize_state(Phase(phase))).to_dict()

    _run(ctx, command)


@state.command("update")
@click.option("--phase", type=click.Choice([p.value for p in Phase]), default=None)
@click.option("--task", "task_id", default=None, help="Point the current task at this id")
@click.option("--clear-task", is_flag=True, help="Clear the current task")
@click.option("--prd", default=None, help="PRD payload as JSON")
@click.option("--add-error", default=None, help="Error entry as JSON")
@click.pass_context
def state_update(
    ctx: click.Context,
    phase: str | None,
    task_id: str | None,
    clear_task: bool,
    prd: str | None,
    add_error: str | None,
) -> None:
    """Apply changes to the workflow state in one write."""
    current_task: Any = UNSET
    if clear_task:
        current_task = None
    elif task_id is not None:
        current_task = task_id

    update = StateUpdate(
        phase=Phase(phase) if phase else None,
        current_task=current_task,
        prd=_parse_json_option(prd, "--prd"),
        add_error=_parse_json_option(add_error, "--add-error"),
    )

    async def command(services: Services) -> Any:
        return (await services.state.update_state(update)).to_dict()

    _run(ctx, command)


@state.command("clear")
@click.option("--force", is_flag=True, help="Clear even if the workflow is not complete")
@click.pass_context
def state_clear(ctx: click.Context, force: bool) -> None:
    """Delete the workflow state."""

    async def command(services: Services) -> Any:
        return (await services.state.clear_state(force=force)).to_dict()

    _run(ctx, command)


@state.command("archive")
@click.option("--force", is_flag=True, help="Archive even if the workflow is not complete")
@click.pass_context
def state_archive(ctx: click.Context, force: bool) -> None:
    """Archive the session's state, PRD, tasks and logs."""

    async def command(services: Services) -> Any:
        return (await services.state.archive_session(force=force)).to_dict()

    _run(ctx, command)


# =============================================================================
# Status
# =============================================================================


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Summarize task progress and the workflow position."""

    async def command(services: Services) -> Any:
        return (await services.status.get_project_status()).to_dict()

    _run(ctx, command)


if __name__ == "__main__":
    cli()
