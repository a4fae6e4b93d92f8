"""CLI entrypoint for wo-runner."""

import logging
from pathlib import Path

import rich_click as click

from wo_runner import __version__
from wo_runner.runner.controllers import (
    BatchCommand,
    RunCommand,
    SettingGetCommand,
    SettingSetCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskRefCommand,
    WoRunnerCliController,
)
from wo_runner.runner.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WoRunnerCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="wo-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for runner diagnostics.",
)
def wo_runner(log_level: str) -> None:
    """Work-order runner CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@wo_runner.group()
def tasks() -> None:
    """Work-order management commands."""


@tasks.command("add")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Short work-order name.")
@click.option("--objective", required=True, help="What the agent must achieve.")
@click.option("--acceptance", "acceptance_criteria", default=None, help="Acceptance criteria.")
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Lower runs first.",
)
@click.option("--role", "assigned_to", default=None, help="Executor role (default from env).")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Task id or slug that must be done first. Can be repeated.",
)
@click.option("--draft", is_flag=True, default=False, help="Create as draft (needs approval).")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    objective: str,
    acceptance_criteria: str | None,
    tags: tuple[str, ...],
    priority: int,
    assigned_to: str | None,
    depends_on: tuple[str, ...],
    draft: bool,
) -> None:
    """Create a work order."""

    _emit_lines(
        CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                name=name,
                objective=objective,
                acceptance_criteria=acceptance_criteria,
                tags=tags,
                priority=priority,
                assigned_to=assigned_to,
                depends_on=depends_on,
                draft=draft,
            ),
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent work orders."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(db_path=db_path, status=status, limit=limit)))


@tasks.command("show")
@_DB_PATH_OPTION
@click.argument("reference")
def tasks_show(db_path: Path | None, reference: str) -> None:
    """Show one work order with its event stream."""

    _emit_lines(CONTROLLER.show_task(TaskRefCommand(db_path=db_path, reference=reference)))


@tasks.command("approve")
@_DB_PATH_OPTION
@click.argument("reference")
def tasks_approve(db_path: Path | None, reference: str) -> None:
    """Approve a draft work order so it becomes ready."""

    command = TaskRefCommand(db_path=db_path, reference=reference)
    _emit_lines(_guarded(CONTROLLER.approve_task, command))


@tasks.command("cancel")
@_DB_PATH_OPTION
@click.argument("reference")
def tasks_cancel(db_path: Path | None, reference: str) -> None:
    """Cancel a work order that has not finished."""

    command = TaskRefCommand(db_path=db_path, reference=reference)
    _emit_lines(_guarded(CONTROLLER.cancel_task, command))


@wo_runner.command("run")
@_DB_PATH_OPTION
@click.argument("reference")
@click.option(
    "--detach",
    is_flag=True,
    default=False,
    help="Dispatch in the background and return immediately.",
)
def run(db_path: Path | None, reference: str, detach: bool) -> None:
    """Run one work order until it completes, fails, or exhausts its invocations."""

    _emit_lines(
        _guarded(
            CONTROLLER.run_task,
            RunCommand(db_path=db_path, reference=reference, detach=detach),
        ),
    )


@wo_runner.command("batch")
@_DB_PATH_OPTION
@click.option(
    "--mode",
    type=click.Choice(["step", "batch"]),
    default="batch",
    show_default=True,
    help="`step` runs ready work orders one at a time; `batch` runs waves in parallel.",
)
@click.option(
    "--slots",
    type=click.IntRange(min=1, max=32),
    default=None,
    help="Parallel slots per wave (default from WO_RUNNER_PARALLEL_SLOTS).",
)
@click.option(
    "--prefect",
    "use_prefect",
    is_flag=True,
    default=False,
    help="Run waves as a Prefect flow.",
)
def batch(db_path: Path | None, mode: str, slots: int | None, use_prefect: bool) -> None:
    """Run the ready queue in waves until it drains."""

    _emit_lines(
        _guarded(
            CONTROLLER.run_batch,
            BatchCommand(db_path=db_path, mode=mode, slots=slots, use_prefect=use_prefect),
        ),
    )


@wo_runner.group()
def settings() -> None:
    """Runtime system settings stored in the database."""


@settings.command("set")
@_DB_PATH_OPTION
@click.argument("key")
@click.argument("value")
def settings_set(db_path: Path | None, key: str, value: str) -> None:
    """Store a system setting (for example verify_proxy_enabled=false)."""

    _emit_lines(CONTROLLER.set_setting(SettingSetCommand(db_path=db_path, key=key, value=value)))


@settings.command("get")
@_DB_PATH_OPTION
@click.argument("key")
def settings_get(db_path: Path | None, key: str) -> None:
    """Print a system setting."""

    _emit_lines(CONTROLLER.get_setting(SettingGetCommand(db_path=db_path, key=key)))


def _guarded(handler, command) -> list[str]:  # noqa: ANN001
    try:
        return handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    wo_runner()
