from __future__ import annotations

import allure
import pytest

from task_relay.orchestrator.errors import (
    InvalidTaskParametersError,
    TaskContextError,
    TaskNotFoundError,
    TaskPublishError,
    UnknownTaskTypeError,
)
from task_relay.orchestrator.models import TaskStatus
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport.topology import TASKS_QUEUE

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Submission"),
]


def _running_parent(runtime: TaskRelayRuntime, *, expected: int | None) -> str:
    parent_id = runtime.submission.submit_task("alice", "echo", {"message": "parent"})
    runtime.state.try_set_running(parent_id, node_id="test-node")
    if expected is not None:
        runtime.state.set_expected_sub_tasks(parent_id, expected)
    return parent_id


def test_submit_task_persists_normalized_parameters(runtime: TaskRelayRuntime) -> None:
    task_id = runtime.submission.submit_task("alice", "echo", {"message": "hi"})

    record = runtime.submission.get_task_status(task_id, "alice")
    assert record is not None
    assert record.status is TaskStatus.QUEUED
    assert record.parameters == {"message": "hi", "fail_attempts": 0, "fail_permanently": False}
    assert "created" in record.timestamps
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 1
    assert runtime.submission.get_task_status(task_id, "mallory") is None


def test_submit_task_rejects_unknown_type_and_bad_parameters(runtime: TaskRelayRuntime) -> None:
    with pytest.raises(UnknownTaskTypeError):
        runtime.submission.submit_task("alice", "resize", {})
    with pytest.raises(InvalidTaskParametersError, match="echo"):
        runtime.submission.submit_task("alice", "echo", {"message": ["not", "text"]})

    assert runtime.submission.list_tasks() == []
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 0


def test_submit_task_marks_record_failed_when_publish_fails(
    runtime: TaskRelayRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(runtime.producer, "send_task", lambda **_: False)

    with pytest.raises(TaskPublishError) as raised:
        runtime.submission.submit_task("alice", "echo", {"message": "lost"})

    record = runtime.state.get_task(raised.value.task_id)
    assert record is not None
    assert record.status is TaskStatus.FAILED
    assert record.error_info is not None
    assert record.error_info["failure_reason"] == "publish_failed"


def test_submit_with_parent_requires_existing_parent(runtime: TaskRelayRuntime) -> None:
    with pytest.raises(TaskNotFoundError):
        runtime.submission.submit_task(
            "alice",
            "echo",
            {"message": "orphan"},
            parent_task_id="missing",
        )


def test_submit_with_parent_counts_towards_total(runtime: TaskRelayRuntime) -> None:
    parent_id = runtime.submission.submit_task(
        "alice",
        "echo",
        {"message": "parent"},
        expected_sub_tasks=1,
    )

    child_id = runtime.submission.submit_task(
        "alice",
        "echo",
        {"message": "child"},
        parent_task_id=parent_id,
    )

    parent = runtime.state.get_task(parent_id)
    child = runtime.state.get_task(child_id)
    assert parent is not None and parent.sub_task_summary == {"total": 1}
    assert child is not None and child.parent_task_id == parent_id


def test_submit_sub_task_enforces_declared_count(runtime: TaskRelayRuntime) -> None:
    undeclared = _running_parent(runtime, expected=None)
    with pytest.raises(TaskContextError, match="expected sub-tasks"):
        runtime.submission.submit_sub_task(
            parent_task_id=undeclared,
            user_id="alice",
            task_type="echo",
            parameters={"message": "x"},
        )

    parent_id = _running_parent(runtime, expected=1)
    runtime.submission.submit_sub_task(
        parent_task_id=parent_id,
        user_id="alice",
        task_type="echo",
        parameters={"message": "first"},
    )
    with pytest.raises(TaskContextError, match="already submitted"):
        runtime.submission.submit_sub_task(
            parent_task_id=parent_id,
            user_id="alice",
            task_type="echo",
            parameters={"message": "second"},
        )


def test_sub_task_publish_failure_dead_letters_child(
    runtime: TaskRelayRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    parent_id = _running_parent(runtime, expected=2)
    monkeypatch.setattr(runtime.producer, "send_task", lambda **_: False)

    child_id = runtime.submission.submit_sub_task(
        parent_task_id=parent_id,
        user_id="alice",
        task_type="echo",
        parameters={"message": "lost"},
    )

    child = runtime.state.get_task(child_id)
    parent = runtime.state.get_task(parent_id)
    assert child is not None
    assert child.status is TaskStatus.DEAD_LETTER
    assert child.error_info is not None
    assert child.error_info["dead_letter_reason"] == "publish_failed"
    assert parent is not None
    assert parent.sub_task_summary == {"total": 1, "failed": 1}
    assert parent.status is TaskStatus.RUNNING


def test_cancel_task_checks_owner_and_state(runtime: TaskRelayRuntime, drain) -> None:
    task_id = runtime.submission.submit_task("alice", "echo", {"message": "hi"})

    assert runtime.submission.cancel_task(task_id, "mallory") is False
    assert runtime.submission.cancel_task("missing") is False
    assert runtime.submission.cancel_task(task_id, "alice") is True
    assert runtime.submission.cancel_task(task_id, "alice") is False

    other_id = runtime.submission.submit_task("alice", "echo", {"message": "done"})
    drain()
    assert runtime.submission.cancel_task(other_id) is False
    events = runtime.submission.get_task_events(task_id)
    assert [event.status for event in events] == [TaskStatus.QUEUED, TaskStatus.CANCELLED]
