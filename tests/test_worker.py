from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from task_relay.orchestrator import worker as worker_module
from task_relay.orchestrator.models import ConsumeOutcome, TaskStatus
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport.topology import DEAD_LETTER_QUEUE, TASKS_QUEUE
from task_relay.orchestrator.worker import TaskWorker, WorkerRunSummary
from task_relay.storage.common import utc_now

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Worker Pool"),
]


def test_summary_records_outcomes() -> None:
    summary = WorkerRunSummary()
    for outcome in (
        ConsumeOutcome.SUCCEEDED,
        ConsumeOutcome.RETRIED,
        ConsumeOutcome.DEAD_LETTERED,
        ConsumeOutcome.DISCARDED,
    ):
        summary.record(outcome)
    total = WorkerRunSummary(idle_polls=2)
    total.add(summary)

    assert (total.processed, total.succeeded, total.retried) == (4, 1, 1)
    assert (total.dead_lettered, total.discarded, total.idle_polls) == (1, 1, 2)


def test_worker_run_loop_stops_when_idle(runtime: TaskRelayRuntime) -> None:
    runtime.submission.submit_task("alice", "echo", {"message": "one"})
    runtime.submission.submit_task("alice", "echo", {"message": "two"})
    worker = TaskWorker(
        broker=runtime.broker,
        consumer=runtime.consumer,
        worker_id="w-0",
        poll_interval_seconds=0.0,
    )

    try:
        summary = worker.run_loop(max_idle_polls=1)
    finally:
        worker.close()

    assert summary.processed == 2
    assert summary.succeeded == 2
    assert summary.idle_polls == 1


def test_pool_run_once_processes_single_delivery(runtime: TaskRelayRuntime) -> None:
    runtime.submission.submit_task("alice", "echo", {"message": "one"})
    runtime.submission.submit_task("alice", "echo", {"message": "two"})
    pool = runtime.build_worker_pool(concurrency=1)

    summary = pool.run_once()

    assert summary.processed == 1
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 1
    assert runtime.broker.queue_info(TASKS_QUEUE).consumer_count == 0


def test_pool_runs_batch_to_completion(runtime: TaskRelayRuntime) -> None:
    parent_id = runtime.submission.submit_task(
        "alice",
        "echo_batch",
        {"messages": ["a", "b", "c", "d"]},
    )
    pool = runtime.build_worker_pool(concurrency=3)

    summary = pool.run(max_idle_polls=5)

    assert summary.processed == 5
    assert summary.succeeded == 5
    parent = runtime.state.get_task(parent_id)
    assert parent is not None
    assert parent.status is TaskStatus.COMPLETED
    assert parent.sub_task_summary == {"total": 4, "completed": 4}


def test_pool_respects_shared_task_cap(runtime: TaskRelayRuntime) -> None:
    for index in range(3):
        runtime.submission.submit_task("alice", "echo", {"message": f"m{index}"})
    pool = runtime.build_worker_pool(concurrency=2)

    summary = pool.run(max_tasks=2, max_idle_polls=3)

    assert summary.processed == 2
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 1


def test_pool_completes_retry_after_delay(runtime: TaskRelayRuntime, broker_clock) -> None:
    task_id = runtime.submission.submit_task(
        "alice",
        "echo",
        {"message": "flaky", "fail_attempts": 1},
    )
    pool = runtime.build_worker_pool(concurrency=1)

    first = pool.run_once()
    broker_clock.advance(5)
    second = pool.run_once()

    assert (first.retried, second.succeeded) == (1, 1)
    record = runtime.state.get_task(task_id)
    assert record is not None
    assert record.status is TaskStatus.COMPLETED
    assert record.retry_count == 1


def test_maintenance_releases_abandoned_leases(runtime: TaskRelayRuntime, broker_clock) -> None:
    task_id = runtime.submission.submit_task("alice", "echo", {"message": "abandoned"})
    abandoned = runtime.broker.open_channel(prefetch_count=1)
    assert abandoned.get(TASKS_QUEUE) is not None
    pool = runtime.build_worker_pool(concurrency=1)

    broker_clock.advance(runtime.settings.transport.stale_delivery_seconds + 60)
    pool.run_maintenance()
    summary = pool.run_once()

    assert summary.succeeded == 1
    record = runtime.state.get_task(task_id)
    assert record is not None
    assert record.status is TaskStatus.COMPLETED


@pytest.mark.parametrize(
    ("task_type", "parameters", "expected_status"),
    [
        ("echo", {"message": "orphan"}, TaskStatus.RETRYING),
        ("echo_batch", {"messages": []}, TaskStatus.DEAD_LETTER),
    ],
)
def test_maintenance_recovers_stale_running_tasks(
    runtime: TaskRelayRuntime,
    monkeypatch: pytest.MonkeyPatch,
    task_type: str,
    parameters: dict,
    expected_status: TaskStatus,
) -> None:
    task_id = runtime.submission.submit_task("alice", task_type, parameters)
    runtime.broker.purge(TASKS_QUEUE)
    runtime.state.try_set_running(task_id, node_id="dead-node")
    pool = runtime.build_worker_pool(concurrency=1)
    pool.stale_task_seconds = 60
    monkeypatch.setattr(worker_module, "utc_now", lambda: utc_now() + timedelta(minutes=5))

    pool.run_maintenance()

    record = runtime.state.get_task(task_id)
    assert record is not None
    assert record.status is expected_status
    if expected_status is TaskStatus.RETRYING:
        assert record.retry_count == 1
        assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 1
    else:
        assert record.error_info is not None
        assert record.error_info["dead_letter_reason"] == "stale_running"


def test_pool_aggregates_wide_fan_out_under_contention(runtime: TaskRelayRuntime) -> None:
    messages = [f"m{index}" for index in range(30)]
    parent_id = runtime.submission.submit_task("alice", "echo_batch", {"messages": messages})
    pool = runtime.build_worker_pool(concurrency=6)

    summary = pool.run(max_idle_polls=20)

    assert summary.processed == 31
    assert summary.dead_lettered == 0
    parent = runtime.state.get_task(parent_id)
    assert parent is not None
    assert parent.status is TaskStatus.COMPLETED
    assert parent.sub_task_summary == {"total": 30, "completed": 30}
    children = runtime.state.list_tasks(parent_task_id=parent_id, limit=100)
    assert {child.status for child in children} == {TaskStatus.COMPLETED}
    assert runtime.broker.queue_info(DEAD_LETTER_QUEUE).message_count == 0
