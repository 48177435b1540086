"""Domain models for background task records, messages and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

ErrorInfo = dict[str, Any]


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"
    COMPLETED_WITH_ERRORS = "completed_with_errors"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.DEAD_LETTER,
        TaskStatus.CANCELLED,
        TaskStatus.COMPLETED_WITH_ERRORS,
    },
)

# FAILED and DEAD_LETTER only leave their terminal state through manual replay.
# record_failure is a terminal override and does not consult this table.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED, TaskStatus.DEAD_LETTER},
    ),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.RETRYING,
            TaskStatus.FAILED,
            TaskStatus.DEAD_LETTER,
            TaskStatus.CANCELLED,
            TaskStatus.COMPLETED_WITH_ERRORS,
        },
    ),
    TaskStatus.RETRYING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED, TaskStatus.DEAD_LETTER},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.RETRYING}),
    TaskStatus.DEAD_LETTER: frozenset({TaskStatus.RETRYING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.COMPLETED_WITH_ERRORS: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class FailureClass(str, Enum):
    """Closed set of failure labels attached to error info."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    INPUT_CONTRACT_ERROR = "input_contract_error"
    OUTPUT_CONTRACT_ERROR = "output_contract_error"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    INFRASTRUCTURE = "infrastructure"
    UNCLASSIFIED = "unclassified"


class SubTaskCounter(str, Enum):
    """Keys of the parent's sub-task status summary."""

    TOTAL = "total"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Child status -> parent summary bucket; non-terminal children only count towards TOTAL.
SUB_TASK_COUNTER_BY_STATUS = {
    TaskStatus.COMPLETED: SubTaskCounter.COMPLETED,
    TaskStatus.COMPLETED_WITH_ERRORS: SubTaskCounter.COMPLETED,
    TaskStatus.FAILED: SubTaskCounter.FAILED,
    TaskStatus.DEAD_LETTER: SubTaskCounter.FAILED,
    TaskStatus.CANCELLED: SubTaskCounter.CANCELLED,
}

BODY_COMPLETED_TIMESTAMP = "body_completed"
CREATED_TIMESTAMP = "created"


@dataclass(slots=True)
class TaskRecord:
    """Persisted task state, also used as the read-only snapshot for callers."""

    task_id: str
    user_id: str
    task_type: str
    status: TaskStatus
    parent_task_id: str | None = None
    parameters: Any = None
    progress: Any = None
    result: Any = None
    error_info: ErrorInfo | None = None
    retry_count: int = 0
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    execution_node_id: str | None = None
    timestamps: dict[str, datetime] = field(default_factory=dict)
    sub_task_summary: dict[str, int] = field(default_factory=dict)
    expected_sub_tasks: int | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def sub_task_count(self, key: SubTaskCounter) -> int:
        return self.sub_task_summary.get(key.value, 0)

    @property
    def finished_sub_tasks(self) -> int:
        return (
            self.sub_task_count(SubTaskCounter.COMPLETED)
            + self.sub_task_count(SubTaskCounter.FAILED)
            + self.sub_task_count(SubTaskCounter.CANCELLED)
        )

    @property
    def failed_sub_tasks(self) -> int:
        return self.sub_task_count(SubTaskCounter.FAILED) + self.sub_task_count(
            SubTaskCounter.CANCELLED,
        )

    @property
    def awaits_sub_tasks(self) -> bool:
        return (
            self.expected_sub_tasks is not None
            and self.expected_sub_tasks > 0
            and self.finished_sub_tasks < self.expected_sub_tasks
        )


TaskSnapshot = TaskRecord


@dataclass(slots=True)
class TaskMessage:
    """Transport envelope metadata for one task delivery."""

    task_id: str
    user_id: str
    task_type: str
    retry_count: int
    body: str
    correlation_id: str | None = None
    redelivered: bool = False


@dataclass(slots=True)
class ExternalTaskEvent:
    """Append-only notification describing one task transition."""

    event_id: str
    task_id: str
    task_type: str
    user_id: str
    status: TaskStatus
    timestamp: datetime
    progress: Any = None
    result: Any = None
    error_info: ErrorInfo | None = None
    retry_count: int | None = None
    dead_letter: bool | None = None
    parent_task_id: str | None = None
    execution_node_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_id": self.event_id,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "user_id": self.user_id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        optional = {
            "progress": self.progress,
            "result": self.result,
            "error_info": self.error_info,
            "retry_count": self.retry_count,
            "dead_letter": self.dead_letter,
            "parent_task_id": self.parent_task_id,
            "execution_node_id": self.execution_node_id,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(slots=True)
class TaskEventView:
    """Audit trail entry for CLI inspection."""

    event_id: str
    task_id: str
    status: TaskStatus
    retry_count: int | None
    dead_letter: bool | None
    details: dict[str, Any] | None
    created_at: datetime


class ConsumeOutcome(str, Enum):
    """What the consumer did with one delivery."""

    DISCARDED = "discarded"
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class DeadLetterEntry:
    """One quarantined message enriched with its task record."""

    task_id: str | None
    task_type: str | None
    user_id: str | None
    retry_count: int
    reason: str | None
    status: TaskStatus | None
    error_info: ErrorInfo | None
    enqueued_at: datetime


@dataclass(slots=True)
class QueueInfo:
    """Depth and consumer count of one queue."""

    queue_name: str
    message_count: int
    consumer_count: int
