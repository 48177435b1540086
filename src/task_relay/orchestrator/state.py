"""Task state machine with optimistic concurrency control."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from task_relay.orchestrator.errors import ConcurrentUpdateError, TaskNotFoundError
from task_relay.orchestrator.models import (
    BODY_COMPLETED_TIMESTAMP,
    CREATED_TIMESTAMP,
    SUB_TASK_COUNTER_BY_STATUS,
    ErrorInfo,
    SubTaskCounter,
    TaskEventView,
    TaskRecord,
    TaskStatus,
    can_transition,
)
from task_relay.orchestrator.repository import TaskRepository
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

# A mutation returns False to decline the write; the operation becomes a no-op.
Mutation = Callable[[TaskRecord], bool]


@dataclass(slots=True)
class SubTaskSummaryUpdate:
    """Parent state after a sub-task counter update."""

    parent: TaskRecord
    finalized: bool


class TaskStateService:
    """Sole writer of task records.

    Every operation reloads the record, applies a pure mutation to a copy and
    writes it conditioned on the version it read. Lost races are retried up to
    ``optimistic_lock_attempts`` times with a linear backoff. Sub-task
    reconciliation gets its own budget: every finishing child of a fan-out
    contends for the same parent row.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        optimistic_lock_attempts: int = 3,
        reconcile_attempts: int = 20,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.optimistic_lock_attempts = optimistic_lock_attempts
        self.reconcile_attempts = max(reconcile_attempts, optimistic_lock_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def create_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        user_id: str,
        task_type: str,
        parameters: Any,
        parent_task_id: str | None = None,
        expected_sub_tasks: int | None = None,
    ) -> TaskRecord:
        if parent_task_id is not None and self.repository.get_task(parent_task_id) is None:
            raise TaskNotFoundError(parent_task_id)
        record = TaskRecord(
            task_id=task_id,
            user_id=user_id,
            task_type=task_type,
            status=TaskStatus.QUEUED,
            parent_task_id=parent_task_id,
            parameters=parameters,
            expected_sub_tasks=expected_sub_tasks,
            timestamps={CREATED_TIMESTAMP: utc_now()},
        )
        created = self.repository.insert_task(record)
        logger.debug("Created task %s type=%s parent=%s", task_id, task_type, parent_task_id)
        return created

    def get_task(self, task_id: str) -> TaskRecord | None:
        return self.repository.get_task(task_id)

    def find_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        record = self.repository.get_task(task_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        user_id: str | None = None,
        parent_task_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskRecord]:
        return self.repository.list_tasks(
            status=status,
            user_id=user_id,
            parent_task_id=parent_task_id,
            limit=limit,
        )

    def list_stale_running(self, *, cutoff: datetime) -> list[TaskRecord]:
        return self.repository.list_stale_running(cutoff=cutoff)

    def list_events(self, task_id: str) -> list[TaskEventView]:
        return self.repository.list_events(task_id)

    def list_running_parents(self) -> list[TaskRecord]:
        return self.repository.list_running_parents()

    def try_set_running(self, task_id: str, *, node_id: str) -> bool:
        """Idempotency gate: claim the task for execution on ``node_id``."""

        def _mutate(record: TaskRecord) -> bool:
            if record.status not in (TaskStatus.QUEUED, TaskStatus.RETRYING):
                return False
            now = utc_now()
            _set_status(record, TaskStatus.RUNNING, now=now)
            record.execution_node_id = node_id
            record.last_attempt_at = now
            return True

        return self._update_with_optimistic_lock(task_id, _mutate) is not None

    def record_progress(self, task_id: str, progress: Any) -> TaskRecord | None:
        def _mutate(record: TaskRecord) -> bool:
            if record.status is not TaskStatus.RUNNING:
                return False
            record.progress = progress
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def record_completion(self, task_id: str, result: Any) -> TaskRecord | None:
        """Store the body's result.

        A parent still waiting for declared sub-tasks stays RUNNING with the
        body marked complete; aggregation finishes it.
        """

        def _mutate(record: TaskRecord) -> bool:
            if record.status is not TaskStatus.RUNNING:
                return False
            now = utc_now()
            record.result = result
            record.timestamps[BODY_COMPLETED_TIMESTAMP] = now
            if record.awaits_sub_tasks:
                return True
            _set_status(record, _aggregate_status(record), now=now)
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def record_failure(
        self,
        task_id: str,
        error_info: ErrorInfo,
        *,
        dead_letter: bool,
    ) -> TaskRecord | None:
        """Terminal override: set FAILED or DEAD_LETTER whatever the current status.

        Covers infrastructure failures observed outside the RUNNING state, such
        as a publish that failed after the record was created.
        Callers that must not clobber a finished record check its status first.
        """

        target = TaskStatus.DEAD_LETTER if dead_letter else TaskStatus.FAILED

        def _mutate(record: TaskRecord) -> bool:
            if record.status is not target and record.status.is_terminal:
                logger.warning(
                    "Overriding terminal status %s of task %s with %s",
                    record.status.value,
                    task_id,
                    target.value,
                )
            record.error_info = error_info
            _set_status(record, target, now=utc_now())
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def record_retrying(
        self,
        task_id: str,
        error_info: ErrorInfo | None,
        *,
        next_attempt_at: datetime | None,
        count_attempt: bool = True,
    ) -> TaskRecord | None:
        """Move to RETRYING; manual replay passes ``count_attempt=False``."""

        def _mutate(record: TaskRecord) -> bool:
            if not can_transition(record.status, TaskStatus.RETRYING):
                return False
            if count_attempt:
                record.retry_count += 1
            if error_info is not None:
                record.error_info = error_info
            record.next_attempt_at = next_attempt_at
            _set_status(record, TaskStatus.RETRYING, now=utc_now())
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def cancel_task(self, task_id: str) -> TaskRecord | None:
        def _mutate(record: TaskRecord) -> bool:
            if record.status.is_terminal:
                return False
            _set_status(record, TaskStatus.CANCELLED, now=utc_now())
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def set_expected_sub_tasks(self, task_id: str, count: int) -> TaskRecord | None:
        if count < 0:
            raise ValueError("Expected sub-task count must be >= 0.")

        def _mutate(record: TaskRecord) -> bool:
            if record.status.is_terminal:
                return False
            record.expected_sub_tasks = count
            return True

        return self._update_with_optimistic_lock(task_id, _mutate)

    def update_sub_task_status_summary(
        self,
        parent_task_id: str,
        key: SubTaskCounter,
        delta: int = 1,
    ) -> SubTaskSummaryUpdate | None:
        """Bump one sub-task counter and finalize the parent once all children finished."""

        finalized = False

        def _mutate(record: TaskRecord) -> bool:
            nonlocal finalized
            finalized = False
            record.sub_task_summary[key.value] = record.sub_task_count(key) + delta
            if _ready_to_finalize(record):
                _set_status(record, _aggregate_status(record), now=utc_now())
                finalized = True
            return True

        parent = self._update_with_optimistic_lock(parent_task_id, _mutate)
        if parent is None:
            return None
        if finalized:
            logger.info(
                "Parent task %s finalized as %s (sub-tasks %s)",
                parent_task_id,
                parent.status.value,
                parent.sub_task_summary,
            )
        return SubTaskSummaryUpdate(parent=parent, finalized=finalized)

    def reconcile_sub_tasks(self, parent_task_id: str) -> SubTaskSummaryUpdate | None:
        """Recount the parent's summary from its child records; finalize once all finished.

        Idempotent: a duplicated or replayed child event converges on the same
        summary instead of bumping a counter twice. ``None`` if the parent is gone.
        """

        finalized = False
        unchanged: TaskRecord | None = None

        def _mutate(record: TaskRecord) -> bool:
            nonlocal finalized, unchanged
            finalized = False
            unchanged = None
            summary = self._count_sub_tasks(record.task_id)
            changed = summary != record.sub_task_summary
            record.sub_task_summary = summary
            if _ready_to_finalize(record):
                _set_status(record, _aggregate_status(record), now=utc_now())
                finalized = True
                return True
            if not changed:
                unchanged = record
                return False
            return True

        parent = self._update_with_optimistic_lock(
            parent_task_id,
            _mutate,
            attempts=self.reconcile_attempts,
        )
        if parent is None:
            if unchanged is None:
                return None
            return SubTaskSummaryUpdate(parent=unchanged, finalized=False)
        if finalized:
            logger.info(
                "Parent task %s finalized as %s (sub-tasks %s)",
                parent_task_id,
                parent.status.value,
                parent.sub_task_summary,
            )
        return SubTaskSummaryUpdate(parent=parent, finalized=finalized)

    def _count_sub_tasks(self, parent_task_id: str) -> dict[str, int]:
        counts = self.repository.count_sub_tasks_by_status(parent_task_id)
        summary = {SubTaskCounter.TOTAL.value: sum(counts.values())}
        for status, count in counts.items():
            counter = SUB_TASK_COUNTER_BY_STATUS.get(status)
            if counter is not None:
                summary[counter.value] = summary.get(counter.value, 0) + count
        return {key: value for key, value in summary.items() if value}

    def _update_with_optimistic_lock(
        self,
        task_id: str,
        mutate: Mutation,
        *,
        attempts: int | None = None,
    ) -> TaskRecord | None:
        attempts = attempts or self.optimistic_lock_attempts
        for attempt in range(1, attempts + 1):
            current = self.repository.get_task(task_id)
            if current is None:
                logger.warning("Task %s not found for state update", task_id)
                return None
            candidate = copy.deepcopy(current)
            if not mutate(candidate):
                return None
            written = self.repository.compare_and_swap(candidate, expected_version=current.version)
            if written is not None:
                return written
            logger.debug(
                "Optimistic lock conflict on task %s (attempt %s/%s)",
                task_id,
                attempt,
                attempts,
            )
            if attempt < attempts:
                self._sleep(self.backoff_seconds * attempt)
        logger.warning(
            "Giving up on task %s after %s optimistic lock conflicts",
            task_id,
            attempts,
        )
        raise ConcurrentUpdateError(task_id, attempts)


def _set_status(record: TaskRecord, status: TaskStatus, *, now: datetime) -> None:
    record.status = status
    record.timestamps[status.value] = now


def _ready_to_finalize(record: TaskRecord) -> bool:
    expected = record.expected_sub_tasks
    if expected is None or record.finished_sub_tasks < expected:
        return False
    return (
        record.status is TaskStatus.RUNNING
        and BODY_COMPLETED_TIMESTAMP in record.timestamps
    )


def _aggregate_status(record: TaskRecord) -> TaskStatus:
    expected = record.expected_sub_tasks or 0
    if expected <= 0:
        return TaskStatus.COMPLETED
    failures = record.failed_sub_tasks
    if failures == 0:
        return TaskStatus.COMPLETED
    if failures >= expected:
        return TaskStatus.FAILED
    return TaskStatus.COMPLETED_WITH_ERRORS
