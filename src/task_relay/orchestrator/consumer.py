"""Per-delivery processing: idempotency gate, execution and retry routing."""

from __future__ import annotations

import logging
from datetime import timedelta

from pydantic import ValidationError

from task_relay.orchestrator.context import TaskContext
from task_relay.orchestrator.errors import MalformedMessageError, TaskRelayError
from task_relay.orchestrator.events import SubTaskAggregator, TaskEventPublisher
from task_relay.orchestrator.failure_classifier import (
    build_error_info,
    build_infrastructure_error_info,
)
from task_relay.orchestrator.models import (
    ConsumeOutcome,
    ErrorInfo,
    TaskMessage,
    TaskRecord,
    TaskStatus,
)
from task_relay.orchestrator.producer import TaskMessageProducer, encode_parameters
from task_relay.orchestrator.rate_limiter import RateLimiter
from task_relay.orchestrator.registry import ExecutorRegistry
from task_relay.orchestrator.services import TaskSubmissionService
from task_relay.orchestrator.state import TaskStateService
from task_relay.orchestrator.transport.base import (
    HEADER_RETRY_COUNT,
    HEADER_TASK_ID,
    HEADER_TASK_TYPE,
    HEADER_USER_ID,
    Channel,
    Delivery,
)
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


def parse_task_message(delivery: Delivery) -> TaskMessage:
    headers = delivery.headers
    missing = [
        name
        for name in (HEADER_TASK_ID, HEADER_USER_ID, HEADER_TASK_TYPE)
        if not headers.get(name)
    ]
    if missing:
        raise MalformedMessageError(
            f"Delivery {delivery.delivery_tag} is missing headers: {', '.join(missing)}",
        )
    try:
        retry_count = int(headers.get(HEADER_RETRY_COUNT, 0))
    except (TypeError, ValueError) as error:
        raise MalformedMessageError(
            f"Delivery {delivery.delivery_tag} has invalid {HEADER_RETRY_COUNT}",
        ) from error
    return TaskMessage(
        task_id=str(headers[HEADER_TASK_ID]),
        user_id=str(headers[HEADER_USER_ID]),
        task_type=str(headers[HEADER_TASK_TYPE]),
        retry_count=retry_count,
        body=delivery.body,
        correlation_id=delivery.correlation_id,
        redelivered=delivery.redelivered,
    )


class TaskConsumer:
    """Turns one delivery into exactly one ack or reject.

    Only the worker that wins ``try_set_running`` executes the body; every
    other copy of the message is acked without side effects.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        state: TaskStateService,
        registry: ExecutorRegistry,
        producer: TaskMessageProducer,
        events: TaskEventPublisher,
        submission: TaskSubmissionService,
        node_id: str,
        aggregator: SubTaskAggregator | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.state = state
        self.registry = registry
        self.producer = producer
        self.events = events
        self.submission = submission
        self.node_id = node_id
        self.aggregator = aggregator
        self.rate_limiter = rate_limiter

    def handle_delivery(self, channel: Channel, delivery: Delivery) -> ConsumeOutcome:
        try:
            return self._process(channel, delivery)
        except Exception as error:  # noqa: BLE001
            logger.exception("Processing delivery %s failed", delivery.delivery_tag)
            return self._dead_letter_after_crash(channel, delivery, error)

    def _process(self, channel: Channel, delivery: Delivery) -> ConsumeOutcome:
        message = parse_task_message(delivery)
        if not self.state.try_set_running(message.task_id, node_id=self.node_id):
            logger.info(
                "Task %s is not runnable (redelivered=%s); discarding delivery",
                message.task_id,
                message.redelivered,
            )
            channel.ack(delivery.delivery_tag)
            return ConsumeOutcome.DISCARDED

        record = self.state.get_task(message.task_id)
        if record is None:
            channel.ack(delivery.delivery_tag)
            return ConsumeOutcome.DISCARDED
        self.events.publish_record(record)

        executable = self.registry.get(message.task_type)
        if executable is None:
            logger.error(
                "No executable for task type %r (task %s)",
                message.task_type,
                record.task_id,
            )
            return self._dead_letter(
                channel,
                delivery,
                message,
                build_infrastructure_error_info(
                    f"No executable registered for task type {message.task_type!r}",
                    dead_letter_reason="unknown_task_type",
                ),
            )

        try:
            parameters = self.registry.parse_body(executable, message.body)
        except ValidationError as error:
            logger.error("Task %s has invalid parameters: %s", record.task_id, error)
            return self._dead_letter(
                channel,
                delivery,
                message,
                build_error_info(error, dead_letter_reason="invalid_parameters"),
            )

        context = TaskContext(
            record=record,
            parameters=parameters,
            retry_count=message.retry_count,
            node_id=self.node_id,
            state=self.state,
            events=self.events,
            submission=self.submission,
            rate_limiter=self.rate_limiter,
        )
        outcome = self.registry.execute(executable, parameters, context)

        if outcome.is_success:
            return self._complete(channel, delivery, message, outcome.result)

        error = outcome.error or RuntimeError("Execution failed without an exception")
        if outcome.is_retryable and message.retry_count < executable.max_retries:
            return self._retry(channel, delivery, message, build_error_info(error))

        reason = "retries_exhausted" if outcome.is_retryable else "non_retryable"
        logger.warning(
            "Task %s failed (%s) after %s retries: %s",
            message.task_id,
            reason,
            message.retry_count,
            error,
        )
        return self._dead_letter(
            channel,
            delivery,
            message,
            build_error_info(error, dead_letter_reason=reason),
        )

    def _complete(
        self,
        channel: Channel,
        delivery: Delivery,
        message: TaskMessage,
        result: object,
    ) -> ConsumeOutcome:
        updated = self.state.record_completion(message.task_id, result)
        if updated is None:
            logger.info("Completion of task %s ignored; task left RUNNING", message.task_id)
        elif updated.status is TaskStatus.RUNNING:
            logger.info("Task %s body finished; waiting for sub-tasks", message.task_id)
        else:
            self.events.publish_record(updated)
        channel.ack(delivery.delivery_tag)
        return ConsumeOutcome.SUCCEEDED

    def _retry(
        self,
        channel: Channel,
        delivery: Delivery,
        message: TaskMessage,
        error_info: ErrorInfo,
    ) -> ConsumeOutcome:
        next_retry = message.retry_count + 1
        tier = self.producer.tier_for(next_retry)
        updated = self.state.record_retrying(
            message.task_id,
            error_info,
            next_attempt_at=utc_now() + timedelta(seconds=tier.delay_seconds),
        )
        if updated is None:
            logger.info("Retry of task %s skipped; task left RUNNING", message.task_id)
            channel.ack(delivery.delivery_tag)
            return ConsumeOutcome.DISCARDED
        self.events.publish_record(updated)

        published = self.producer.send_to_retry_tier(
            task_id=message.task_id,
            user_id=message.user_id,
            task_type=message.task_type,
            body=message.body,
            retry_count=next_retry,
        )
        if not published:
            return self._dead_letter(
                channel,
                delivery,
                message,
                {**error_info, "dead_letter_reason": "retry_publish_failed"},
            )
        channel.ack(delivery.delivery_tag)
        return ConsumeOutcome.RETRIED

    def _dead_letter(
        self,
        channel: Channel,
        delivery: Delivery,
        message: TaskMessage,
        error_info: ErrorInfo,
    ) -> ConsumeOutcome:
        finished = self._finished_record(message.task_id)
        if finished is not None:
            return self._settle_finished(channel, delivery, finished)
        updated = self.state.record_failure(message.task_id, error_info, dead_letter=True)
        if updated is not None:
            self.events.publish_record(updated)
        channel.nack(delivery.delivery_tag, requeue=False)
        return ConsumeOutcome.DEAD_LETTERED

    def _dead_letter_after_crash(
        self,
        channel: Channel,
        delivery: Delivery,
        error: BaseException,
    ) -> ConsumeOutcome:
        task_id = delivery.headers.get(HEADER_TASK_ID)
        try:
            finished = self._finished_record(str(task_id)) if task_id else None
            if finished is not None:
                # Crashed after the record was finalized, e.g. while aggregating a parent.
                return self._settle_finished(channel, delivery, finished)
            if task_id:
                updated = self.state.record_failure(
                    str(task_id),
                    build_error_info(error, dead_letter_reason="processing_error"),
                    dead_letter=True,
                )
                if updated is not None:
                    self.events.publish_record(updated)
            channel.nack(delivery.delivery_tag, requeue=False)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Could not dead-letter delivery %s; closing channel for redelivery",
                delivery.delivery_tag,
            )
            channel.close()
        return ConsumeOutcome.DEAD_LETTERED

    def _finished_record(self, task_id: str) -> TaskRecord | None:
        record = self.state.get_task(task_id)
        if record is None or not record.status.is_terminal:
            return None
        return record

    def _settle_finished(
        self,
        channel: Channel,
        delivery: Delivery,
        record: TaskRecord,
    ) -> ConsumeOutcome:
        """Settle a delivery whose task already reached a terminal status.

        The record is left untouched; only a dead-lettered task keeps its message
        in the dead letter queue so it can still be replayed.
        """

        logger.warning(
            "Task %s is already %s; settling delivery %s without rewriting it",
            record.task_id,
            record.status.value,
            delivery.delivery_tag,
        )
        if record.parent_task_id is not None and self.aggregator is not None:
            try:
                self.aggregator.reconcile(record.parent_task_id)
            except TaskRelayError as error:
                logger.warning(
                    "Parent %s not reconciled after task %s: %s; maintenance will retry",
                    record.parent_task_id,
                    record.task_id,
                    error,
                )
        if record.status is TaskStatus.DEAD_LETTER:
            channel.nack(delivery.delivery_tag, requeue=False)
            return ConsumeOutcome.DEAD_LETTERED
        channel.ack(delivery.delivery_tag)
        return ConsumeOutcome.DISCARDED

    def recover_stale_task(self, record: TaskRecord) -> bool:
        """Re-enqueue a task stuck in RUNNING, typically after its worker died."""

        executable = self.registry.get(record.task_type)
        max_retries = executable.max_retries if executable is not None else 0
        error_info = build_infrastructure_error_info(
            f"Task stuck in running on node {record.execution_node_id}",
            stale_node_id=record.execution_node_id,
        )
        if record.retry_count >= max_retries:
            updated = self.state.record_failure(
                record.task_id,
                {**error_info, "dead_letter_reason": "stale_running"},
                dead_letter=True,
            )
            if updated is not None:
                self.events.publish_record(updated)
            return False

        updated = self.state.record_retrying(record.task_id, error_info, next_attempt_at=utc_now())
        if updated is None:
            return False
        self.events.publish_record(updated)
        published = self.producer.send_task(
            task_id=updated.task_id,
            user_id=updated.user_id,
            task_type=updated.task_type,
            body=encode_parameters(updated.parameters),
            retry_count=updated.retry_count,
        )
        if not published:
            failed = self.state.record_failure(
                record.task_id,
                {**error_info, "dead_letter_reason": "retry_publish_failed"},
                dead_letter=True,
            )
            if failed is not None:
                self.events.publish_record(failed)
            return False
        logger.warning(
            "Recovered stale task %s from node %s",
            record.task_id,
            record.execution_node_id,
        )
        return True
