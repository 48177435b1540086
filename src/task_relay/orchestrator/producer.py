"""Publishes task messages, delayed retries and broadcast events."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from task_relay.orchestrator.errors import TransportError
from task_relay.orchestrator.models import ExternalTaskEvent
from task_relay.orchestrator.transport.base import (
    DEFAULT_EXCHANGE,
    HEADER_ORIGINAL_ROUTING_KEY,
    HEADER_RETRY_COUNT,
    HEADER_TASK_ID,
    HEADER_TASK_TYPE,
    HEADER_USER_ID,
    Broker,
    OutgoingMessage,
)
from task_relay.orchestrator.transport.topology import (
    EVENTS_EXCHANGE,
    TASKS_EXCHANGE,
    RetryTier,
    event_routing_key,
    select_retry_tier,
    task_routing_key,
)

logger = logging.getLogger(__name__)


def encode_parameters(parameters: Any) -> str:
    return json.dumps(parameters, ensure_ascii=False, sort_keys=True)


class TaskMessageProducer:
    """Each send returns True only after the broker committed the message."""

    def __init__(self, broker: Broker, *, retry_tiers: Sequence[RetryTier]) -> None:
        self.broker = broker
        self.retry_tiers = tuple(retry_tiers)

    def send_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        user_id: str,
        task_type: str,
        body: str,
        retry_count: int = 0,
    ) -> bool:
        return self._publish(
            exchange=TASKS_EXCHANGE,
            routing_key=task_routing_key(task_type),
            message=OutgoingMessage(
                body=body,
                headers=_task_headers(
                    task_id=task_id,
                    user_id=user_id,
                    task_type=task_type,
                    retry_count=retry_count,
                ),
                correlation_id=uuid4().hex,
            ),
            description=f"task {task_id}",
        )

    def send_to_retry_tier(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        user_id: str,
        task_type: str,
        body: str,
        retry_count: int,
    ) -> bool:
        """Park the message in the delay tier chosen by ``retry_count``."""

        tier = self.tier_for(retry_count)
        headers = _task_headers(
            task_id=task_id,
            user_id=user_id,
            task_type=task_type,
            retry_count=retry_count,
        )
        headers[HEADER_ORIGINAL_ROUTING_KEY] = task_routing_key(task_type)
        published = self._publish(
            exchange=DEFAULT_EXCHANGE,
            routing_key=tier.queue_name,
            message=OutgoingMessage(body=body, headers=headers, correlation_id=uuid4().hex),
            description=f"retry {retry_count} of task {task_id}",
        )
        if published:
            logger.info(
                "Task %s scheduled for retry %s in %s (%ss)",
                task_id,
                retry_count,
                tier.queue_name,
                tier.delay_seconds,
            )
        return published

    def send_task_event(self, event: ExternalTaskEvent) -> bool:
        return self._publish(
            exchange=EVENTS_EXCHANGE,
            routing_key=event_routing_key(event.status.value),
            message=OutgoingMessage(
                body=json.dumps(event.to_payload(), ensure_ascii=False, sort_keys=True),
                headers={HEADER_TASK_ID: event.task_id, HEADER_TASK_TYPE: event.task_type},
                correlation_id=uuid4().hex,
                message_id=event.event_id,
            ),
            description=f"{event.status.value} event of task {event.task_id}",
        )

    def tier_for(self, retry_count: int) -> RetryTier:
        return select_retry_tier(self.retry_tiers, retry_count)

    def _publish(
        self,
        *,
        exchange: str,
        routing_key: str,
        message: OutgoingMessage,
        description: str,
    ) -> bool:
        try:
            self.broker.publish(
                exchange=exchange,
                routing_key=routing_key,
                message=message,
                mandatory=exchange != EVENTS_EXCHANGE,
            )
        except TransportError as error:
            logger.error("Failed to publish %s via %r: %s", description, exchange, error)
            return False
        return True


def _task_headers(
    *,
    task_id: str,
    user_id: str,
    task_type: str,
    retry_count: int,
) -> dict[str, Any]:
    return {
        HEADER_TASK_ID: task_id,
        HEADER_USER_ID: user_id,
        HEADER_TASK_TYPE: task_type,
        HEADER_RETRY_COUNT: retry_count,
    }
