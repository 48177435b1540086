"""Inspection, manual replay and purge of the dead-letter queue."""

from __future__ import annotations

import logging

from task_relay.orchestrator.events import TaskEventPublisher
from task_relay.orchestrator.models import DeadLetterEntry, QueueInfo
from task_relay.orchestrator.producer import TaskMessageProducer
from task_relay.orchestrator.state import TaskStateService
from task_relay.orchestrator.transport.base import (
    HEADER_DEATH,
    HEADER_RETRY_COUNT,
    HEADER_TASK_ID,
    HEADER_TASK_TYPE,
    HEADER_USER_ID,
    Broker,
    Delivery,
)
from task_relay.orchestrator.transport.topology import DEAD_LETTER_QUEUE

logger = logging.getLogger(__name__)


class DeadLetterService:
    """Operator tooling over ``tasks.dlq.queue``.

    Listing and replay lease messages through a private channel and put back
    everything they do not consume, so the queue content survives inspection.
    """

    def __init__(
        self,
        *,
        broker: Broker,
        state: TaskStateService,
        producer: TaskMessageProducer,
        events: TaskEventPublisher,
        scan_limit: int = 1000,
        queue_name: str = DEAD_LETTER_QUEUE,
    ) -> None:
        self.broker = broker
        self.state = state
        self.producer = producer
        self.events = events
        self.scan_limit = scan_limit
        self.queue_name = queue_name

    def get_queue_info(self) -> QueueInfo:
        return self.broker.queue_info(self.queue_name)

    def list_dead_letters(self, limit: int = 50) -> list[DeadLetterEntry]:
        channel = self.broker.open_channel(prefetch_count=None)
        leased: list[Delivery] = []
        try:
            while len(leased) < max(0, limit):
                delivery = channel.get(self.queue_name)
                if delivery is None:
                    break
                leased.append(delivery)
            entries = [self._to_entry(delivery) for delivery in leased]
            for delivery in leased:
                channel.nack(delivery.delivery_tag, requeue=True)
        finally:
            channel.close()
        return entries

    def retry_dead_letter(self, task_id: str) -> bool:
        """Move the task's quarantined message back to the primary queue.

        Scans at most ``scan_limit`` messages; returns False when the task's
        message is not among them or the task can no longer be replayed.
        """

        channel = self.broker.open_channel(prefetch_count=None)
        try:
            scanned: list[Delivery] = []
            match: Delivery | None = None
            while len(scanned) < self.scan_limit:
                delivery = channel.get(self.queue_name)
                if delivery is None:
                    break
                if delivery.headers.get(HEADER_TASK_ID) == task_id:
                    match = delivery
                    break
                scanned.append(delivery)

            replayed = False
            if match is not None:
                replayed = self._replay(match)
                if replayed:
                    channel.ack(match.delivery_tag)
                else:
                    channel.nack(match.delivery_tag, requeue=True)
            for delivery in scanned:
                channel.nack(delivery.delivery_tag, requeue=True)
        finally:
            channel.close()

        if match is None:
            logger.info(
                "Task %s not found in %s (scanned %s message(s))",
                task_id,
                self.queue_name,
                len(scanned),
            )
        return replayed

    def purge_dead_letter_queue(self) -> int:
        purged = self.broker.purge(self.queue_name)
        logger.warning("Purged %s dead-lettered message(s)", purged)
        return purged

    def _replay(self, delivery: Delivery) -> bool:
        task_id = str(delivery.headers[HEADER_TASK_ID])
        updated = self.state.record_retrying(
            task_id,
            None,
            next_attempt_at=None,
            count_attempt=False,
        )
        if updated is None:
            logger.warning("Task %s cannot be replayed from its current state", task_id)
            return False
        self.events.publish_record(updated)

        published = self.producer.send_task(
            task_id=task_id,
            user_id=updated.user_id,
            task_type=updated.task_type,
            body=delivery.body,
            retry_count=updated.retry_count,
        )
        if not published:
            logger.error("Replay of task %s could not be published", task_id)
            failed = self.state.record_failure(
                task_id,
                {**(updated.error_info or {}), "dead_letter_reason": "replay_publish_failed"},
                dead_letter=True,
            )
            if failed is not None:
                self.events.publish_record(failed)
            return False
        logger.info("Replayed dead-lettered task %s", task_id)
        return True

    def _to_entry(self, delivery: Delivery) -> DeadLetterEntry:
        headers = delivery.headers
        task_id = headers.get(HEADER_TASK_ID)
        record = self.state.get_task(str(task_id)) if task_id else None
        deaths = headers.get(HEADER_DEATH) or []
        return DeadLetterEntry(
            task_id=str(task_id) if task_id else None,
            task_type=headers.get(HEADER_TASK_TYPE),
            user_id=headers.get(HEADER_USER_ID),
            retry_count=int(headers.get(HEADER_RETRY_COUNT, 0) or 0),
            reason=deaths[0].get("reason") if deaths else None,
            status=record.status if record is not None else None,
            error_info=record.error_info if record is not None else None,
            enqueued_at=delivery.enqueued_at,
        )
