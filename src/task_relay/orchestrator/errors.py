"""Exception hierarchy for task orchestration."""

from __future__ import annotations

from task_relay.orchestrator.models import FailureClass


class TaskRelayError(Exception):
    """Base class for orchestration errors."""


class TransportError(TaskRelayError):
    """Broker operation could not be completed."""


class UnroutableMessageError(TransportError):
    """Mandatory publish matched no queue."""


class TaskNotFoundError(TaskRelayError, LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ConcurrentUpdateError(TaskRelayError):
    """Optimistic write lost the race more times than the attempt budget allows."""

    def __init__(self, task_id: str, attempts: int) -> None:
        super().__init__(
            f"Concurrent update conflict on task {task_id} after {attempts} attempts",
        )
        self.task_id = task_id
        self.attempts = attempts


class TaskPublishError(TaskRelayError):
    """Task record was created but its message could not be enqueued."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Failed to publish task {task_id}; task marked failed")
        self.task_id = task_id


class UnknownTaskTypeError(TaskRelayError, ValueError):
    def __init__(self, task_type: str) -> None:
        super().__init__(f"No executable registered for task type: {task_type!r}")
        self.task_type = task_type


class InvalidTaskParametersError(TaskRelayError, ValueError):
    """Submitted parameters do not match the executable's parameter type."""


class TaskContextError(TaskRelayError, RuntimeError):
    """Task context used outside of its contract."""


class MalformedMessageError(TaskRelayError, ValueError):
    """Delivery is missing required task headers."""


class RateLimitExceededError(TaskRelayError):
    """No rate limit permit became available within the timeout."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Rate limit permit for {key!r} not acquired; retry later")
        self.key = key


class TaskFailure(Exception):
    """Raised by task bodies to label a failure with an explicit class.

    Executables may base ``is_retryable`` on ``kind``; the consumer only uses
    the label for error info.
    """

    def __init__(self, message: str, *, kind: FailureClass = FailureClass.UNCLASSIFIED) -> None:
        super().__init__(message)
        self.kind = kind
