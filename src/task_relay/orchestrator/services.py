"""Public entry point to submit, query and cancel background tasks."""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from task_relay.orchestrator.errors import (
    InvalidTaskParametersError,
    TaskContextError,
    TaskNotFoundError,
    TaskPublishError,
)
from task_relay.orchestrator.events import TaskEventPublisher
from task_relay.orchestrator.failure_classifier import build_infrastructure_error_info
from task_relay.orchestrator.models import (
    SubTaskCounter,
    TaskEventView,
    TaskRecord,
    TaskSnapshot,
    TaskStatus,
)
from task_relay.orchestrator.producer import TaskMessageProducer, encode_parameters
from task_relay.orchestrator.registry import ExecutorRegistry
from task_relay.orchestrator.state import TaskStateService

logger = logging.getLogger(__name__)


class TaskSubmissionService:
    """Creates task records and enqueues them.

    With a registry, unknown task types and invalid parameters are rejected
    before any record is written.
    """

    def __init__(
        self,
        *,
        state: TaskStateService,
        producer: TaskMessageProducer,
        events: TaskEventPublisher,
        registry: ExecutorRegistry | None = None,
    ) -> None:
        self.state = state
        self.producer = producer
        self.events = events
        self.registry = registry

    def submit_task(  # noqa: PLR0913
        self,
        user_id: str,
        task_type: str,
        parameters: Any,
        *,
        parent_task_id: str | None = None,
        expected_sub_tasks: int | None = None,
    ) -> str:
        stored, body = self._prepare_payload(task_type, parameters)
        record = self.state.create_task(
            task_id=str(uuid4()),
            user_id=user_id,
            task_type=task_type,
            parameters=stored,
            parent_task_id=parent_task_id,
            expected_sub_tasks=expected_sub_tasks,
        )
        if parent_task_id is not None:
            self.state.reconcile_sub_tasks(parent_task_id)
        self.events.publish_record(record)

        if not self._enqueue(record, body):
            failed = self.state.record_failure(
                record.task_id,
                build_infrastructure_error_info(
                    "Task message could not be published",
                    failure_reason="publish_failed",
                ),
                dead_letter=False,
            )
            if failed is not None:
                self.events.publish_record(failed)
            raise TaskPublishError(record.task_id)

        logger.info("Submitted task %s type=%s user=%s", record.task_id, task_type, user_id)
        return record.task_id

    def submit_sub_task(
        self,
        *,
        parent_task_id: str,
        user_id: str,
        task_type: str,
        parameters: Any,
    ) -> str:
        """Create and enqueue a child of ``parent_task_id``.

        An enqueue failure dead-letters the child at once, which the parent's
        aggregation counts as a failed sub-task; the child id is still returned.
        """

        parent = self.state.get_task(parent_task_id)
        if parent is None:
            raise TaskNotFoundError(parent_task_id)
        if parent.expected_sub_tasks is None:
            raise TaskContextError(f"Task {parent_task_id} did not declare expected sub-tasks")
        if parent.sub_task_count(SubTaskCounter.TOTAL) >= parent.expected_sub_tasks:
            raise TaskContextError(
                f"Task {parent_task_id} already submitted "
                f"{parent.expected_sub_tasks} declared sub-task(s)",
            )

        stored, body = self._prepare_payload(task_type, parameters)
        child = self.state.create_task(
            task_id=str(uuid4()),
            user_id=user_id,
            task_type=task_type,
            parameters=stored,
            parent_task_id=parent_task_id,
        )
        self.state.reconcile_sub_tasks(parent_task_id)
        self.events.publish_record(child)

        if not self._enqueue(child, body):
            logger.error("Sub-task %s of %s could not be enqueued", child.task_id, parent_task_id)
            dead = self.state.record_failure(
                child.task_id,
                build_infrastructure_error_info(
                    "Sub-task message could not be published",
                    dead_letter_reason="publish_failed",
                ),
                dead_letter=True,
            )
            if dead is not None:
                self.events.publish_record(dead)
        return child.task_id

    def get_task_status(self, task_id: str, user_id: str | None = None) -> TaskSnapshot | None:
        if user_id is None:
            return self.state.get_task(task_id)
        return self.state.find_task(task_id, user_id)

    def cancel_task(self, task_id: str, user_id: str | None = None) -> bool:
        """Cancel a non-terminal task; a body already running is not interrupted."""

        if self.get_task_status(task_id, user_id) is None:
            return False
        cancelled = self.state.cancel_task(task_id)
        if cancelled is None:
            return False
        self.events.publish_record(cancelled)
        logger.info("Cancelled task %s", task_id)
        return True

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        user_id: str | None = None,
        parent_task_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskRecord]:
        return self.state.list_tasks(
            status=status,
            user_id=user_id,
            parent_task_id=parent_task_id,
            limit=limit,
        )

    def get_task_events(self, task_id: str) -> list[TaskEventView]:
        return self.state.list_events(task_id)

    def _prepare_payload(self, task_type: str, parameters: Any) -> tuple[Any, str]:
        if self.registry is None:
            return parameters, encode_parameters(parameters)
        executable = self.registry.require(task_type)
        try:
            validated = self.registry.validate_parameters(executable, parameters)
        except ValidationError as error:
            raise InvalidTaskParametersError(
                f"Invalid parameters for task type {task_type!r}: {error}",
            ) from error
        stored = self.registry.dump_parameters(executable, validated)
        return stored, encode_parameters(stored)

    def _enqueue(self, record: TaskRecord, body: str) -> bool:
        return self.producer.send_task(
            task_id=record.task_id,
            user_id=record.user_id,
            task_type=record.task_type,
            body=body,
            retry_count=record.retry_count,
        )
