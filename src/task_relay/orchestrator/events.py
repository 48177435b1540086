"""Transition events: one publish call, several subscribers."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from uuid import uuid4

from task_relay.orchestrator.models import (
    SUB_TASK_COUNTER_BY_STATUS,
    ExternalTaskEvent,
    TaskRecord,
    TaskStatus,
)
from task_relay.orchestrator.producer import TaskMessageProducer
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.state import TaskStateService
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

# Child statuses that change the parent summary; RETRYING drops a replayed failure.
_SUMMARY_CHANGING_STATUSES = frozenset({*SUB_TASK_COUNTER_BY_STATUS, TaskStatus.RETRYING})


class TaskEventSubscriber(Protocol):
    """Receives every published event.

    Errors from a ``critical`` subscriber propagate to the publisher's caller;
    other subscribers are isolated and their errors only logged.
    """

    critical: bool

    def on_event(self, event: ExternalTaskEvent) -> None: ...


def build_event(record: TaskRecord, *, progress: Any = None) -> ExternalTaskEvent:
    """Event describing the record's current status."""

    status = record.status
    return ExternalTaskEvent(
        event_id=uuid4().hex,
        task_id=record.task_id,
        task_type=record.task_type,
        user_id=record.user_id,
        status=status,
        timestamp=utc_now(),
        progress=progress,
        result=(
            record.result
            if status in (TaskStatus.COMPLETED, TaskStatus.COMPLETED_WITH_ERRORS)
            else None
        ),
        error_info=(
            record.error_info
            if status in (TaskStatus.RETRYING, TaskStatus.FAILED, TaskStatus.DEAD_LETTER)
            else None
        ),
        retry_count=record.retry_count,
        dead_letter=(
            status is TaskStatus.DEAD_LETTER
            if status in (TaskStatus.FAILED, TaskStatus.DEAD_LETTER)
            else None
        ),
        parent_task_id=record.parent_task_id,
        execution_node_id=record.execution_node_id if status is TaskStatus.RUNNING else None,
    )


class TaskEventPublisher:
    def __init__(self, subscribers: list[TaskEventSubscriber] | None = None) -> None:
        self._subscribers: list[TaskEventSubscriber] = list(subscribers or [])

    def subscribe(self, subscriber: TaskEventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, event: ExternalTaskEvent) -> None:
        logger.debug("Task %s event %s", event.task_id, event.status.value)
        for subscriber in self._subscribers:
            if subscriber.critical:
                subscriber.on_event(event)
                continue
            try:
                subscriber.on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Event subscriber %s failed for task %s",
                    type(subscriber).__name__,
                    event.task_id,
                )

    def publish_record(self, record: TaskRecord, *, progress: Any = None) -> ExternalTaskEvent:
        event = build_event(record, progress=progress)
        self.publish(event)
        return event


class BrokerEventForwarder:
    """Broadcasts events on the events exchange."""

    critical = False

    def __init__(self, producer: TaskMessageProducer) -> None:
        self.producer = producer

    def on_event(self, event: ExternalTaskEvent) -> None:
        if not self.producer.send_task_event(event):
            logger.warning(
                "Event %s for task %s was not broadcast",
                event.status.value,
                event.task_id,
            )


class TaskEventAuditListener:
    """Persists every event to the ``task_events`` audit table."""

    critical = False

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def on_event(self, event: ExternalTaskEvent) -> None:
        self.repository.add_event(event)


class SubTaskAggregator:
    """Reconciles the parent's summary whenever a sub-task finishes or is replayed."""

    critical = True

    def __init__(self, state: TaskStateService, publisher: TaskEventPublisher) -> None:
        self.state = state
        self.publisher = publisher

    def on_event(self, event: ExternalTaskEvent) -> None:
        if event.parent_task_id is None or event.status not in _SUMMARY_CHANGING_STATUSES:
            return
        if self.reconcile(event.parent_task_id) is None:
            logger.warning(
                "Parent %s of task %s not found; sub-task result not aggregated",
                event.parent_task_id,
                event.task_id,
            )

    def reconcile(self, parent_task_id: str) -> TaskRecord | None:
        """Recount one parent and announce it when this call finalized it."""

        update = self.state.reconcile_sub_tasks(parent_task_id)
        if update is None:
            return None
        if update.finalized:
            self.publisher.publish_record(update.parent)
        return update.parent
