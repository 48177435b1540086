"""Controllers for task-relay CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_relay.config import Settings
from task_relay.orchestrator.errors import TaskPublishError
from task_relay.orchestrator.models import TaskRecord, TaskStatus
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport.topology import TASKS_QUEUE


@dataclass(slots=True)
class SubmitTaskCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    user_id: str
    parameters_json: str
    parent_task_id: str | None = None
    expected_sub_tasks: int | None = None


@dataclass(slots=True)
class TaskLookupCommand:
    """CLI input for status / cancel / inspect."""

    db_path: Path | None
    task_id: str
    user_id: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    concurrency: int | None
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class DeadLetterCommand:
    db_path: Path | None
    limit: int = 50
    task_id: str | None = None


@dataclass(slots=True)
class TopologyCommand:
    db_path: Path | None


class TaskRelayCliController:
    """Command handlers returning output lines."""

    def submit_task(self, command: SubmitTaskCommand) -> list[str]:
        parameters = _parse_parameters(command.parameters_json)
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            try:
                task_id = runtime.submission.submit_task(
                    command.user_id,
                    command.task_type,
                    parameters,
                    parent_task_id=command.parent_task_id,
                    expected_sub_tasks=command.expected_sub_tasks,
                )
            except TaskPublishError as error:
                return [f"Task {error.task_id} could not be enqueued and was marked failed."]
        return [f"Task submitted: {task_id}", f"Type: {command.task_type}"]

    def task_status(self, command: TaskLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            record = runtime.submission.get_task_status(command.task_id, command.user_id)
        if record is None:
            return [f"Task not found: {command.task_id}"]
        return _record_lines(record)

    def cancel_task(self, command: TaskLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            cancelled = runtime.submission.cancel_task(command.task_id, command.user_id)
        if not cancelled:
            return [f"Task not cancelled (missing or already finished): {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            tasks = runtime.submission.list_tasks(
                status=status_filter,
                user_id=command.user_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            created = task.created_at.isoformat() if task.created_at else "-"
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"user={task.user_id} retries={task.retry_count} created_at={created}",
            )
        return lines

    def inspect_task(self, command: TaskLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            record = runtime.submission.get_task_status(command.task_id, command.user_id)
            events = runtime.submission.get_task_events(command.task_id) if record else []
            children = (
                runtime.submission.list_tasks(parent_task_id=command.task_id, limit=500)
                if record
                else []
            )
        if record is None:
            return [f"Task not found: {command.task_id}"]

        lines = _record_lines(record)
        lines.append(f"Parameters: {_compact(record.parameters)}")
        lines.append(f"Result: {_compact(record.result)}")
        if record.error_info:
            lines.append(f"Error class: {record.error_info.get('failure_class', '-')}")
        for name, stamp in sorted(record.timestamps.items(), key=lambda item: item[1]):
            lines.append(f"  timestamp {name}={stamp.isoformat()}")
        lines.append(f"Sub-tasks: {len(children)}")
        for child in children:
            lines.append(f"  {child.task_id} type={child.task_type} status={child.status.value}")
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.status.value} "
                f"retry_count={event.retry_count if event.retry_count is not None else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            pool = runtime.build_worker_pool(concurrency=command.concurrency)
            summary = (
                pool.run_once()
                if command.once
                else pool.run(max_tasks=command.max_tasks, max_idle_polls=command.max_idle_polls)
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
            f"discarded={summary.discarded} idle_polls={summary.idle_polls}",
        ]

    def dead_letter_info(self, command: DeadLetterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            info = runtime.dead_letters.get_queue_info()
        return [
            f"Queue: {info.queue_name}",
            f"Messages: {info.message_count}",
            f"Consumers: {info.consumer_count}",
        ]

    def dead_letter_list(self, command: DeadLetterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            entries = runtime.dead_letters.list_dead_letters(limit=command.limit)

        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            message = (entry.error_info or {}).get("message", "-")
            lines.append(
                f"  {entry.task_id or '-'} type={entry.task_type or '-'} "
                f"status={entry.status.value if entry.status else '-'} "
                f"reason={entry.reason or '-'} retries={entry.retry_count} error={message}",
            )
        return lines

    def dead_letter_retry(self, command: DeadLetterCommand) -> list[str]:
        if command.task_id is None:
            raise ValueError("A task id is required to replay a dead letter.")
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            replayed = runtime.dead_letters.retry_dead_letter(command.task_id)
        if not replayed:
            return [f"Dead letter not replayed: {command.task_id}"]
        return [f"Dead letter replayed: {command.task_id}"]

    def dead_letter_purge(self, command: DeadLetterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            purged = runtime.dead_letters.purge_dead_letter_queue()
        return [f"Purged dead letters: {purged}"]

    def topology(self, command: TopologyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            broker = runtime.broker
            lines = ["Exchanges:"]
            for exchange in broker.exchanges():
                lines.append(f"  {exchange.name} ({exchange.exchange_type.value})")
                for queue_name, routing_key in broker.bindings(exchange.name):
                    lines.append(f"    -> {queue_name} key={routing_key or '-'}")
            lines.append("Queues:")
            for queue in broker.queues():
                info = broker.queue_info(queue.name)
                ttl = f"{queue.message_ttl_seconds:g}s" if queue.message_ttl_seconds else "-"
                lines.append(
                    f"  {queue.name} ready={info.message_count} ttl={ttl} "
                    f"dlx={queue.dead_letter_exchange or '-'}",
                )
            lines.append(f"Primary queue: {TASKS_QUEUE}")
        return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[TaskRelayRuntime]:
    runtime = TaskRelayRuntime(settings)
    try:
        yield runtime
    finally:
        runtime.close()


def _parse_parameters(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Parameters must be valid JSON: {error}") from error


def _parse_status(raw: str | None) -> TaskStatus | None:
    if raw is None:
        return None
    try:
        return TaskStatus(raw)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {raw!r}") from error


def _record_lines(record: TaskRecord) -> list[str]:
    return [
        f"Task: {record.task_id}",
        f"Type: {record.task_type}",
        f"User: {record.user_id}",
        f"Status: {record.status.value}",
        f"Retries: {record.retry_count}",
        f"Parent: {record.parent_task_id or '-'}",
        f"Node: {record.execution_node_id or '-'}",
        f"Progress: {_compact(record.progress)}",
        f"Error: {(record.error_info or {}).get('message', '-')}",
        f"Sub-task summary: {_compact(record.sub_task_summary or None)} "
        f"expected={record.expected_sub_tasks if record.expected_sub_tasks is not None else '-'}",
        f"Version: {record.version}",
    ]


def _compact(value: Any) -> str:
    if value is None:
        return "-"
    return json.dumps(value, ensure_ascii=False, sort_keys=True)
