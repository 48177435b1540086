"""CLI entrypoint for task-relay."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_relay import __version__
from task_relay.logging_setup import parse_log_level, setup_logging
from task_relay.orchestrator.controllers import (
    DeadLetterCommand,
    ListTasksCommand,
    SubmitTaskCommand,
    TaskLookupCommand,
    TaskRelayCliController,
    TopologyCommand,
    WorkerCommand,
)
from task_relay.orchestrator.errors import TaskRelayError
from task_relay.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskRelayCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="task-relay")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    help="Console log level (DEBUG, INFO, WARNING, ERROR).",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Also write DEBUG logs to this file.",
)
def task_relay(log_level: str, log_file: Path | None) -> None:
    """Background task relay CLI."""

    try:
        level = parse_log_level(log_level)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--log-level") from error
    setup_logging(console_level=level, log_file=log_file)


@task_relay.group()
def tasks() -> None:
    """Task submission and inspection commands."""


@tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Registered task type.")
@click.option("--user-id", required=True, help="Owner of the task.")
@click.option(
    "--params",
    "parameters_json",
    default="{}",
    show_default=True,
    help="Task parameters as a JSON document.",
)
@click.option("--parent-task-id", default=None, help="Attach the task to a parent task.")
@click.option(
    "--expected-sub-tasks",
    type=click.IntRange(min=0),
    default=None,
    help="Number of sub-tasks this task will spawn.",
)
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    user_id: str,
    parameters_json: str,
    parent_task_id: str | None,
    expected_sub_tasks: int | None,
) -> None:
    """Create a task record and enqueue it for execution."""

    _emit_lines(
        _invoke(
            CONTROLLER.submit_task,
            SubmitTaskCommand(
                db_path=db_path,
                task_type=task_type,
                user_id=user_id,
                parameters_json=parameters_json,
                parent_task_id=parent_task_id,
                expected_sub_tasks=expected_sub_tasks,
            ),
        ),
    )


@tasks.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", default=None, help="Only show the task if it belongs to this user.")
@click.argument("task_id")
def tasks_status(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Show current status of one task."""

    _emit_lines(
        _invoke(
            CONTROLLER.task_status,
            TaskLookupCommand(db_path=db_path, task_id=task_id, user_id=user_id),
        ),
    )


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", default=None, help="Only cancel the task if it belongs to this user.")
@click.argument("task_id")
def tasks_cancel(db_path: Path | None, user_id: str | None, task_id: str) -> None:
    """Cancel a task that has not finished yet."""

    _emit_lines(
        _invoke(
            CONTROLLER.cancel_task,
            TaskLookupCommand(db_path=db_path, task_id=task_id, user_id=user_id),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by task status.",
)
@click.option("--user-id", default=None, help="Filter by owner.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    user_id: str | None,
    limit: int,
) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, user_id=user_id, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show a task with its sub-tasks and event history."""

    _emit_lines(
        _invoke(
            CONTROLLER.inspect_task,
            TaskLookupCommand(db_path=db_path, task_id=task_id),
        ),
    )


@task_relay.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one delivery.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads (defaults to TASK_RELAY_WORKER_CONCURRENCY).",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many deliveries across all workers.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop a worker after this many consecutive empty polls. Runs forever when omitted.",
)
def worker(
    db_path: Path | None,
    once: bool,
    concurrency: int | None,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Consume task deliveries until stopped."""

    _emit_lines(
        _invoke(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                concurrency=concurrency,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@task_relay.group()
def dlq() -> None:
    """Dead-letter queue commands."""


@dlq.command("info")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def dlq_info(db_path: Path | None) -> None:
    """Show dead-letter queue depth and consumers."""

    _emit_lines(_invoke(CONTROLLER.dead_letter_info, DeadLetterCommand(db_path=db_path)))


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of dead letters to print.",
)
def dlq_list(db_path: Path | None, limit: int) -> None:
    """List dead letters without removing them."""

    _emit_lines(
        _invoke(CONTROLLER.dead_letter_list, DeadLetterCommand(db_path=db_path, limit=limit)),
    )


@dlq.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def dlq_retry(db_path: Path | None, task_id: str) -> None:
    """Move one dead-lettered task back to the work queue."""

    _emit_lines(
        _invoke(
            CONTROLLER.dead_letter_retry,
            DeadLetterCommand(db_path=db_path, task_id=task_id),
        ),
    )


@dlq.command("purge")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.confirmation_option(prompt="Delete every message in the dead-letter queue?")
def dlq_purge(db_path: Path | None) -> None:
    """Delete all ready dead letters."""

    _emit_lines(_invoke(CONTROLLER.dead_letter_purge, DeadLetterCommand(db_path=db_path)))


@task_relay.command("topology")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def topology(db_path: Path | None) -> None:
    """Print declared exchanges, bindings and queues."""

    _emit_lines(_invoke(CONTROLLER.topology, TopologyCommand(db_path=db_path)))


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (TaskRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_relay()
