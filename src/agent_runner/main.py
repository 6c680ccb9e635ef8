"""CLI entrypoint for agent-runner."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from agent_runner import __version__
from agent_runner.config import LOG_LEVELS
from agent_runner.controllers import (
    AgentRunCommand,
    AgentsListCommand,
    CliController,
    HistoryListCommand,
    HistoryMaintenanceCommand,
    HistoryRecordCommand,
    LogsViewCommand,
    RunResult,
    TodoRunCommand,
    TodosListCommand,
)
from agent_runner.execution.models import ExecutionType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CliController()

F = TypeVar("F", bound=Callable[..., Any])

_workspace_option = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root. Defaults to AGENT_RUNNER_WORKSPACE or the current directory.",
)


def _cli_errors(func: F) -> F:
    """Turn configuration and lookup failures into clean CLI errors."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (LookupError, ValueError) as error:
            message = error.args[0] if isinstance(error, KeyError) and error.args else str(error)
            raise click.ClickException(message) from error

    return wrapper  # type: ignore[return-value]


@click.group()
@click.version_option(version=__version__, prog_name="agent-runner")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="AGENT_RUNNER_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Diagnostic log level (written to stderr).",
)
def agent_runner(log_level: str) -> None:
    """Run AI agent CLI tasks, follow their logs and review execution history."""

    _configure_logging(log_level)


@agent_runner.group()
def agents() -> None:
    """Agent definitions."""


@agents.command("list")
@_workspace_option
@_cli_errors
def agents_list(workspace: Path | None) -> None:
    """List agents found in the agent directory."""

    _emit_lines(CONTROLLER.list_agents(AgentsListCommand(workspace=workspace)))


@agents.command("run")
@_workspace_option
@click.argument("name")
@click.option(
    "--stream/--no-stream",
    default=True,
    show_default=True,
    help="Print agent messages while they arrive.",
)
@_cli_errors
def agents_run(workspace: Path | None, name: str, stream: bool) -> None:
    """Run one agent and wait for it to finish. Ctrl-C stops it."""

    command = AgentRunCommand(workspace=workspace, name=name, stream=stream)
    _finish(CONTROLLER.run_agent(command, click.echo))


@agent_runner.group()
def todos() -> None:
    """Markdown todo items."""


@todos.command("list")
@_workspace_option
@click.option(
    "--completed/--open-only",
    "show_completed",
    default=True,
    show_default=True,
    help="Include completed items.",
)
@_cli_errors
def todos_list(workspace: Path | None, show_completed: bool) -> None:
    """List todo items with their ids."""

    _emit_lines(
        CONTROLLER.list_todos(TodosListCommand(workspace=workspace, show_completed=show_completed)),
    )


@todos.command("run")
@_workspace_option
@click.argument("todo_id")
@click.option(
    "--stream/--no-stream",
    default=True,
    show_default=True,
    help="Print agent messages while they arrive.",
)
@_cli_errors
def todos_run(workspace: Path | None, todo_id: str, stream: bool) -> None:
    """Hand one open todo item to the agent. Ctrl-C pauses it."""

    command = TodoRunCommand(workspace=workspace, todo_id=todo_id, stream=stream)
    _finish(CONTROLLER.run_todo(command, click.echo))


@agent_runner.group()
def history() -> None:
    """Execution history."""


@history.command("list")
@_workspace_option
@click.option(
    "--type",
    "type_",
    type=click.Choice([item.value for item in ExecutionType]),
    default=None,
    help="Only show one kind of target.",
)
@click.option("--target", "target_id", default=None, help="Only show one target id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max number of records to print.",
)
@_cli_errors
def history_list(
    workspace: Path | None,
    type_: str | None,
    target_id: str | None,
    limit: int | None,
) -> None:
    """Print execution history as a markdown table, newest first."""

    _emit_lines(
        CONTROLLER.list_history(
            HistoryListCommand(
                workspace=workspace,
                type_=ExecutionType(type_) if type_ else None,
                target_id=target_id,
                limit=limit,
            ),
        ),
    )


@history.command("show")
@_workspace_option
@click.argument("record_id")
@_cli_errors
def history_show(workspace: Path | None, record_id: str) -> None:
    """Show one history record."""

    _emit_lines(CONTROLLER.show_history(HistoryRecordCommand(workspace=workspace, record_id=record_id)))


@history.command("remove")
@_workspace_option
@click.argument("record_id")
@_cli_errors
def history_remove(workspace: Path | None, record_id: str) -> None:
    """Delete one history record (the log file is kept)."""

    _emit_lines(CONTROLLER.remove_history(HistoryRecordCommand(workspace=workspace, record_id=record_id)))


@history.command("cleanup")
@_workspace_option
@_cli_errors
def history_cleanup(workspace: Path | None) -> None:
    """Drop records whose log file no longer exists."""

    _emit_lines(CONTROLLER.cleanup_history(HistoryMaintenanceCommand(workspace=workspace)))


@history.command("recover")
@_workspace_option
@_cli_errors
def history_recover(workspace: Path | None) -> None:
    """Mark `running` records left by a crashed session as failed."""

    _emit_lines(CONTROLLER.recover_history(HistoryMaintenanceCommand(workspace=workspace)))


@agent_runner.group()
def logs() -> None:
    """Execution logs."""


@logs.command("view")
@_workspace_option
@click.argument("record_id", required=False)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Log file to show instead of a history record.",
)
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Keep printing new entries as the log grows.",
)
@click.option(
    "--seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop following after this many seconds.",
)
@_cli_errors
def logs_view(
    workspace: Path | None,
    record_id: str | None,
    log_file: Path | None,
    follow: bool,
    seconds: float | None,
) -> None:
    """Render an execution log by history record id or path."""

    _finish(
        CONTROLLER.view_log(
            LogsViewCommand(
                workspace=workspace,
                record_id=record_id,
                log_file=log_file,
                follow=follow,
                seconds=seconds,
            ),
            click.echo,
        ),
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _finish(result: RunResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Execution did not succeed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_runner()
