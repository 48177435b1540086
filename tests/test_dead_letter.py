from __future__ import annotations

import allure

from task_relay.orchestrator.consumer import TaskConsumer
from task_relay.orchestrator.executables import EchoTask
from task_relay.orchestrator.models import ConsumeOutcome, TaskStatus
from task_relay.orchestrator.registry import ExecutorRegistry
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport.topology import TASKS_QUEUE

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Dead Letter Operations"),
]


def _dead_letter(runtime: TaskRelayRuntime, drain, message: str) -> str:
    task_id = runtime.submission.submit_task(
        "alice",
        "echo",
        {"message": message, "fail_permanently": True},
    )
    assert drain() == [ConsumeOutcome.DEAD_LETTERED]
    return task_id


def _batch_without_executor(runtime: TaskRelayRuntime, drain) -> str:
    """Dead-letter an ``echo_batch`` task by consuming it with a registry that lacks it."""

    task_id = runtime.submission.submit_task("alice", "echo_batch", {"messages": []})
    consumer = TaskConsumer(
        state=runtime.state,
        registry=ExecutorRegistry([EchoTask()]),
        producer=runtime.producer,
        events=runtime.events,
        submission=runtime.submission,
        node_id="old-node",
    )
    assert drain(consumer=consumer) == [ConsumeOutcome.DEAD_LETTERED]
    return task_id


def test_list_dead_letters_does_not_consume(runtime: TaskRelayRuntime, drain) -> None:
    first = _dead_letter(runtime, drain, "one")
    second = _dead_letter(runtime, drain, "two")

    listed = runtime.dead_letters.list_dead_letters()
    listed_again = runtime.dead_letters.list_dead_letters(limit=1)

    assert [entry.task_id for entry in listed] == [first, second]
    assert listed[0].reason == "rejected"
    assert listed[0].status is TaskStatus.DEAD_LETTER
    assert listed[0].task_type == "echo"
    assert listed[0].error_info is not None
    assert listed[0].error_info["dead_letter_reason"] == "non_retryable"
    assert len(listed_again) == 1
    info = runtime.dead_letters.get_queue_info()
    assert info.message_count == 2
    assert info.consumer_count == 0


def test_retry_dead_letter_replays_task_once(runtime: TaskRelayRuntime, drain) -> None:
    task_id = _batch_without_executor(runtime, drain)

    assert runtime.dead_letters.retry_dead_letter(task_id) is True
    replayed = runtime.state.get_task(task_id)
    assert replayed is not None
    assert replayed.status is TaskStatus.RETRYING
    assert replayed.retry_count == 0
    assert runtime.dead_letters.get_queue_info().message_count == 0
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 1

    assert drain() == [ConsumeOutcome.SUCCEEDED]
    final = runtime.state.get_task(task_id)
    assert final is not None
    assert final.status is TaskStatus.COMPLETED
    assert runtime.dead_letters.retry_dead_letter(task_id) is False


def test_retry_dead_letter_keeps_other_messages(runtime: TaskRelayRuntime, drain) -> None:
    kept = _dead_letter(runtime, drain, "stays")
    replayed = _batch_without_executor(runtime, drain)

    assert runtime.dead_letters.retry_dead_letter(replayed) is True

    remaining = runtime.dead_letters.list_dead_letters()
    assert [entry.task_id for entry in remaining] == [kept]
    assert runtime.dead_letters.retry_dead_letter("not-there") is False
    assert runtime.dead_letters.get_queue_info().message_count == 1


def test_retry_dead_letter_respects_scan_limit(runtime: TaskRelayRuntime, drain) -> None:
    _dead_letter(runtime, drain, "first")
    target = _dead_letter(runtime, drain, "second")
    runtime.dead_letters.scan_limit = 1

    assert runtime.dead_letters.retry_dead_letter(target) is False
    assert runtime.dead_letters.get_queue_info().message_count == 2


def test_purge_dead_letter_queue(runtime: TaskRelayRuntime, drain) -> None:
    task_id = _dead_letter(runtime, drain, "gone")
    _dead_letter(runtime, drain, "also gone")

    assert runtime.dead_letters.purge_dead_letter_queue() == 2
    assert runtime.dead_letters.list_dead_letters() == []
    record = runtime.state.get_task(task_id)
    assert record is not None
    assert record.status is TaskStatus.DEAD_LETTER
