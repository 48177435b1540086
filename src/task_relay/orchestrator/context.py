"""Capability handle handed to a running task body."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from task_relay.orchestrator.errors import TaskContextError
from task_relay.orchestrator.events import TaskEventPublisher
from task_relay.orchestrator.models import TaskRecord
from task_relay.orchestrator.rate_limiter import RateLimiter
from task_relay.orchestrator.state import TaskStateService

if TYPE_CHECKING:
    from task_relay.orchestrator.services import TaskSubmissionService

logger = logging.getLogger(__name__)


class TaskContext:
    """Identity, progress reporting, logging and sub-task submission for one attempt."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        record: TaskRecord,
        parameters: Any,
        retry_count: int,
        node_id: str,
        state: TaskStateService,
        events: TaskEventPublisher,
        submission: TaskSubmissionService,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._record = record
        self._parameters = parameters
        self._retry_count = retry_count
        self._node_id = node_id
        self._state = state
        self._events = events
        self._submission = submission
        self._rate_limiter = rate_limiter
        self._expected_sub_tasks = record.expected_sub_tasks

    @property
    def task_id(self) -> str:
        return self._record.task_id

    @property
    def user_id(self) -> str:
        return self._record.user_id

    @property
    def task_type(self) -> str:
        return self._record.task_type

    @property
    def parent_task_id(self) -> str | None:
        return self._record.parent_task_id

    @property
    def parameters(self) -> Any:
        return self._parameters

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def expected_sub_tasks(self) -> int | None:
        return self._expected_sub_tasks

    def update_progress(self, progress: Any) -> bool:
        """Store progress and broadcast it; False once the task left RUNNING."""

        updated = self._state.record_progress(self.task_id, progress)
        if updated is None:
            return False
        self._events.publish_record(updated, progress=progress)
        return True

    def log_info(self, message: str, *args: object) -> None:
        logger.info("[task %s] %s", self.task_id, _render(message, args))

    def log_error(self, message: str, *args: object, error: BaseException | None = None) -> None:
        logger.error("[task %s] %s", self.task_id, _render(message, args), exc_info=error)

    def acquire_permit(self, key: str, *, timeout_seconds: float | None = None) -> None:
        """Wait for a rate limit permit for ``key``.

        Raises ``RateLimitExceededError`` on timeout, which is classified as a
        transient backend failure so the attempt is retried later.
        """

        if self._rate_limiter is None:
            return
        self._rate_limiter.require(key, timeout_seconds=timeout_seconds)

    def expect_sub_tasks(self, count: int) -> None:
        """Declare how many sub-tasks this task will submit before submitting any."""

        updated = self._state.set_expected_sub_tasks(self.task_id, count)
        if updated is None:
            raise TaskContextError(f"Task {self.task_id} is no longer active")
        self._expected_sub_tasks = count

    def submit_sub_task(self, task_type: str, parameters: Any) -> str:
        if self._expected_sub_tasks is None:
            raise TaskContextError(
                "Call expect_sub_tasks() with the number of sub-tasks before submitting them.",
            )
        return self._submission.submit_sub_task(
            parent_task_id=self.task_id,
            user_id=self.user_id,
            task_type=task_type,
            parameters=parameters,
        )


def _render(message: str, args: tuple[object, ...]) -> str:
    # Task-supplied text is never used as a format string on its own.
    return message % args if args else message
