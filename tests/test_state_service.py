from __future__ import annotations

import queue
import threading

import allure
import pytest
from sqlalchemy.engine import Engine

from task_relay.orchestrator.errors import ConcurrentUpdateError, TaskNotFoundError
from task_relay.orchestrator.models import (
    BODY_COMPLETED_TIMESTAMP,
    SubTaskCounter,
    TaskStatus,
    can_transition,
)
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.state import TaskStateService

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("State Machine"),
]


def _service(engine: Engine, **kwargs) -> TaskStateService:
    kwargs.setdefault("sleep", lambda _: None)
    return TaskStateService(TaskRepository(engine), **kwargs)


def _create(service: TaskStateService, task_id: str = "task-1", **kwargs) -> None:
    service.create_task(
        task_id=task_id,
        user_id="alice",
        task_type="echo",
        parameters={"message": "hi"},
        **kwargs,
    )


def test_transition_table_keeps_completed_final() -> None:
    assert can_transition(TaskStatus.QUEUED, TaskStatus.RUNNING)
    assert can_transition(TaskStatus.DEAD_LETTER, TaskStatus.RETRYING)
    assert not can_transition(TaskStatus.COMPLETED, TaskStatus.RETRYING)
    assert not can_transition(TaskStatus.CANCELLED, TaskStatus.RUNNING)
    assert all(status.is_terminal for status in (TaskStatus.FAILED, TaskStatus.DEAD_LETTER))


def test_create_task_requires_existing_parent(engine: Engine) -> None:
    service = _service(engine)

    with pytest.raises(TaskNotFoundError):
        _create(service, parent_task_id="missing")


def test_try_set_running_claims_once(engine: Engine) -> None:
    service = _service(engine)
    _create(service)

    assert service.try_set_running("task-1", node_id="node-a") is True
    assert service.try_set_running("task-1", node_id="node-b") is False

    record = service.get_task("task-1")
    assert record is not None
    assert record.status is TaskStatus.RUNNING
    assert record.execution_node_id == "node-a"
    assert record.last_attempt_at is not None
    assert "running" in record.timestamps


def test_try_set_running_race_has_single_winner(engine: Engine) -> None:
    service = _service(engine, optimistic_lock_attempts=5)
    _create(service)
    start_event = threading.Event()
    result_queue: queue.Queue[bool] = queue.Queue()

    def _claim(index: int) -> None:
        start_event.wait(timeout=2)
        result_queue.put(service.try_set_running("task-1", node_id=f"node-{index}"))

    threads = [
        threading.Thread(target=_claim, args=(index,), daemon=True) for index in range(6)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=30)
        assert thread.is_alive() is False

    results = [result_queue.get(timeout=5) for _ in threads]
    assert sorted(results) == [False] * 5 + [True]
    record = service.get_task("task-1")
    assert record is not None
    assert record.version == 1


def test_illegal_transitions_are_no_ops(engine: Engine) -> None:
    service = _service(engine)
    _create(service)

    assert service.record_completion("task-1", {"ok": True}) is None
    assert service.record_progress("task-1", {"step": 1}) is None

    record = service.get_task("task-1")
    assert record is not None
    assert record.status is TaskStatus.QUEUED
    assert record.result is None
    assert record.version == 0


def test_terminal_task_cannot_be_cancelled(engine: Engine) -> None:
    service = _service(engine)
    _create(service)
    service.try_set_running("task-1", node_id="node-a")
    service.record_completion("task-1", {"ok": True})

    assert service.cancel_task("task-1") is None
    record = service.get_task("task-1")
    assert record is not None
    assert record.status is TaskStatus.COMPLETED


@pytest.mark.parametrize("dead_letter", [True, False])
def test_record_failure_overrides_any_status(engine: Engine, dead_letter: bool) -> None:
    service = _service(engine)
    _create(service)
    service.try_set_running("task-1", node_id="node-a")
    service.record_completion("task-1", {"ok": True})

    failed = service.record_failure("task-1", {"message": "late"}, dead_letter=dead_letter)

    expected = TaskStatus.DEAD_LETTER if dead_letter else TaskStatus.FAILED
    assert failed is not None
    assert failed.status is expected
    assert failed.error_info == {"message": "late"}
    assert expected.value in failed.timestamps
    assert failed.version == 3


def test_record_failure_on_queued_task(engine: Engine) -> None:
    service = _service(engine)
    _create(service)

    failed = service.record_failure("task-1", {"message": "publish"}, dead_letter=False)

    assert failed is not None
    assert failed.status is TaskStatus.FAILED
    assert service.record_failure("missing", {"message": "x"}, dead_letter=True) is None


def test_retry_count_only_grows_for_counted_attempts(engine: Engine) -> None:
    service = _service(engine)
    _create(service)

    service.try_set_running("task-1", node_id="node-a")
    first = service.record_retrying("task-1", {"message": "boom"}, next_attempt_at=None)
    service.try_set_running("task-1", node_id="node-a")
    dead = service.record_failure("task-1", {"message": "boom again"}, dead_letter=True)
    replayed = service.record_retrying(
        "task-1",
        None,
        next_attempt_at=None,
        count_attempt=False,
    )

    assert first is not None and first.retry_count == 1
    assert dead is not None and dead.status is TaskStatus.DEAD_LETTER
    assert replayed is not None
    assert replayed.status is TaskStatus.RETRYING
    assert replayed.retry_count == 1
    assert replayed.error_info == {"message": "boom again"}


def test_optimistic_lock_retries_then_succeeds(
    engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sleeps: list[float] = []
    service = _service(engine, backoff_seconds=0.05, sleep=sleeps.append)
    _create(service)
    original = service.repository.compare_and_swap
    calls = {"count": 0}

    def _flaky(record, *, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original(record, expected_version=expected_version)

    monkeypatch.setattr(service.repository, "compare_and_swap", _flaky)

    assert service.cancel_task("task-1") is not None
    assert calls["count"] == 2
    assert sleeps == [0.05]


def test_optimistic_lock_gives_up_after_budget(
    engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sleeps: list[float] = []
    service = _service(
        engine,
        optimistic_lock_attempts=3,
        backoff_seconds=0.05,
        sleep=sleeps.append,
    )
    _create(service)
    monkeypatch.setattr(
        service.repository,
        "compare_and_swap",
        lambda record, *, expected_version: None,
    )

    with pytest.raises(ConcurrentUpdateError) as raised:
        service.cancel_task("task-1")

    assert raised.value.attempts == 3
    assert sleeps == [0.05, 0.1]


def test_parent_waits_for_sub_tasks_before_completing(engine: Engine) -> None:
    service = _service(engine)
    _create(service, "parent")
    service.try_set_running("parent", node_id="node-a")
    service.set_expected_sub_tasks("parent", 2)

    body_done = service.record_completion("parent", {"spawned": 2})
    first = service.update_sub_task_status_summary("parent", SubTaskCounter.COMPLETED)
    second = service.update_sub_task_status_summary("parent", SubTaskCounter.COMPLETED)

    assert body_done is not None
    assert body_done.status is TaskStatus.RUNNING
    assert BODY_COMPLETED_TIMESTAMP in body_done.timestamps
    assert first is not None and not first.finalized
    assert second is not None and second.finalized
    assert second.parent.status is TaskStatus.COMPLETED
    assert second.parent.result == {"spawned": 2}


def test_sub_tasks_finishing_before_body_complete_the_parent_on_completion(
    engine: Engine,
) -> None:
    service = _service(engine)
    _create(service, "parent")
    service.try_set_running("parent", node_id="node-a")
    service.set_expected_sub_tasks("parent", 1)

    early = service.update_sub_task_status_summary("parent", SubTaskCounter.FAILED)
    completed = service.record_completion("parent", None)

    assert early is not None and not early.finalized
    assert completed is not None
    assert completed.status is TaskStatus.FAILED


@pytest.mark.parametrize(
    ("counters", "expected"),
    [
        ((SubTaskCounter.COMPLETED, SubTaskCounter.COMPLETED), TaskStatus.COMPLETED),
        ((SubTaskCounter.COMPLETED, SubTaskCounter.FAILED), TaskStatus.COMPLETED_WITH_ERRORS),
        ((SubTaskCounter.CANCELLED, SubTaskCounter.COMPLETED), TaskStatus.COMPLETED_WITH_ERRORS),
        ((SubTaskCounter.FAILED, SubTaskCounter.CANCELLED), TaskStatus.FAILED),
    ],
)
def test_aggregated_parent_status(
    engine: Engine,
    counters: tuple[SubTaskCounter, SubTaskCounter],
    expected: TaskStatus,
) -> None:
    service = _service(engine)
    _create(service, "parent")
    service.try_set_running("parent", node_id="node-a")
    service.set_expected_sub_tasks("parent", 2)
    service.record_completion("parent", None)

    update = None
    for counter in counters:
        update = service.update_sub_task_status_summary("parent", counter)

    assert update is not None and update.finalized
    assert update.parent.status is expected
    assert expected.value in update.parent.timestamps


def test_total_counter_does_not_finalize(engine: Engine) -> None:
    service = _service(engine)
    _create(service, "parent", expected_sub_tasks=1)

    update = service.update_sub_task_status_summary("parent", SubTaskCounter.TOTAL)

    assert update is not None
    assert not update.finalized
    assert update.parent.sub_task_summary == {"total": 1}
    assert update.parent.status is TaskStatus.QUEUED


def _running_parent(service: TaskStateService, expected: int) -> None:
    _create(service, "parent")
    service.try_set_running("parent", node_id="node-a")
    service.set_expected_sub_tasks("parent", expected)
    service.record_completion("parent", None)


def _finish_child(service: TaskStateService, task_id: str) -> None:
    service.try_set_running(task_id, node_id="node-b")
    service.record_completion(task_id, {"ok": True})


def test_reconcile_counts_child_records_once(engine: Engine) -> None:
    service = _service(engine)
    _running_parent(service, 2)
    _create(service, "child-1", parent_task_id="parent")
    _create(service, "child-2", parent_task_id="parent")
    _finish_child(service, "child-1")

    first = service.reconcile_sub_tasks("parent")
    repeated = service.reconcile_sub_tasks("parent")

    assert first is not None and not first.finalized
    assert first.parent.sub_task_summary == {"total": 2, "completed": 1}
    assert repeated is not None and not repeated.finalized
    assert repeated.parent.sub_task_summary == {"total": 2, "completed": 1}
    assert repeated.parent.version == first.parent.version


def test_reconcile_forgets_failure_of_replayed_child(engine: Engine) -> None:
    service = _service(engine)
    _running_parent(service, 2)
    _create(service, "child-1", parent_task_id="parent")
    _create(service, "child-2", parent_task_id="parent")
    service.try_set_running("child-1", node_id="node-b")
    service.record_failure("child-1", {"message": "boom"}, dead_letter=True)
    failed = service.reconcile_sub_tasks("parent")

    service.record_retrying("child-1", None, next_attempt_at=None, count_attempt=False)
    replayed = service.reconcile_sub_tasks("parent")
    _finish_child(service, "child-2")
    sibling_done = service.reconcile_sub_tasks("parent")
    _finish_child(service, "child-1")
    done = service.reconcile_sub_tasks("parent")

    assert failed is not None and failed.parent.sub_task_summary == {"total": 2, "failed": 1}
    assert replayed is not None and replayed.parent.sub_task_summary == {"total": 2}
    assert sibling_done is not None and not sibling_done.finalized
    assert sibling_done.parent.status is TaskStatus.RUNNING
    assert done is not None and done.finalized
    assert done.parent.status is TaskStatus.COMPLETED
    assert done.parent.sub_task_summary == {"total": 2, "completed": 2}


def test_reconcile_has_its_own_conflict_budget(
    engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = _service(engine, optimistic_lock_attempts=2, reconcile_attempts=5)
    _running_parent(service, 1)
    _create(service, "child-1", parent_task_id="parent")
    write = service.repository.compare_and_swap
    lost_races = [None] * 4

    def _contended(record, *, expected_version):
        if lost_races:
            return lost_races.pop()
        return write(record, expected_version=expected_version)

    monkeypatch.setattr(service.repository, "compare_and_swap", _contended)

    update = service.reconcile_sub_tasks("parent")

    assert update is not None
    assert update.parent.sub_task_summary == {"total": 1}
    lost_races.extend([None] * 2)
    with pytest.raises(ConcurrentUpdateError) as raised:
        service.set_expected_sub_tasks("parent", 1)
    assert raised.value.attempts == 2


def test_reconcile_missing_parent_returns_none(engine: Engine) -> None:
    assert _service(engine).reconcile_sub_tasks("missing") is None


def test_running_parents_lists_only_tasks_expecting_sub_tasks(engine: Engine) -> None:
    service = _service(engine)
    _running_parent(service, 1)
    _create(service, "plain")
    service.try_set_running("plain", node_id="node-a")

    assert [record.task_id for record in service.list_running_parents()] == ["parent"]
