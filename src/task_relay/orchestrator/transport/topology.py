"""Exchange and queue layout for task delivery, delayed retry and dead-lettering.

::

    tasks.exchange (direct, task.<type>) ──> tasks.queue ──reject──> tasks.dlx.exchange
                                                                         │ (fanout)
                                                                         v
    tasks.retry.exchange (fanout) ──> tasks.wait_*.queue (TTL)     tasks.dlq.queue
                                          │ expire
                                          v
                                     tasks.requeue.exchange (topic, #) ──> tasks.queue

    tasks.events.exchange (topic, task.event.<status>)

The producer addresses a single wait queue through the default exchange so
that one retry lands in exactly one tier; ``tasks.retry.exchange`` is there
for tooling that wants to fan a message out to every tier.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from task_relay.orchestrator.transport.base import Broker, ExchangeSpec, ExchangeType, QueueSpec

TASKS_EXCHANGE = "tasks.exchange"
TASKS_QUEUE = "tasks.queue"
RETRY_EXCHANGE = "tasks.retry.exchange"
REQUEUE_EXCHANGE = "tasks.requeue.exchange"
DEAD_LETTER_EXCHANGE = "tasks.dlx.exchange"
DEAD_LETTER_QUEUE = "tasks.dlq.queue"
EVENTS_EXCHANGE = "tasks.events.exchange"

TASK_ROUTING_KEY_PREFIX = "task."
EVENT_ROUTING_KEY_PREFIX = "task.event."

DEFAULT_RETRY_DELAY_TIERS_SECONDS: tuple[int, ...] = (15, 60, 300, 1800)


@dataclass(slots=True, frozen=True)
class RetryTier:
    queue_name: str
    delay_seconds: int


def task_routing_key(task_type: str) -> str:
    return f"{TASK_ROUTING_KEY_PREFIX}{task_type}"


def event_routing_key(status: str) -> str:
    return f"{EVENT_ROUTING_KEY_PREFIX}{status}"


def tier_queue_name(delay_seconds: int) -> str:
    """``tasks.wait_15s.queue``, ``tasks.wait_1m.queue``, ``tasks.wait_2h.queue``."""

    if delay_seconds % 3600 == 0:
        label = f"{delay_seconds // 3600}h"
    elif delay_seconds % 60 == 0:
        label = f"{delay_seconds // 60}m"
    else:
        label = f"{delay_seconds}s"
    return f"tasks.wait_{label}.queue"


def build_retry_tiers(delays_seconds: Iterable[int]) -> tuple[RetryTier, ...]:
    delays = tuple(delays_seconds)
    if not delays:
        raise ValueError("At least one retry delay tier is required.")
    if any(delay <= 0 for delay in delays):
        raise ValueError("Retry delay tiers must be positive.")
    if list(delays) != sorted(delays):
        raise ValueError("Retry delay tiers must be non-decreasing.")
    return tuple(
        RetryTier(queue_name=tier_queue_name(delay), delay_seconds=delay) for delay in delays
    )


def select_retry_tier(tiers: Sequence[RetryTier], retry_count: int) -> RetryTier:
    """Tier for the ``retry_count``-th retry; the last tier absorbs overflow."""

    index = min(max(retry_count, 1) - 1, len(tiers) - 1)
    return tiers[index]


def declare_task_topology(
    broker: Broker,
    *,
    task_types: Iterable[str],
    retry_tiers: Sequence[RetryTier],
) -> None:
    """Idempotently declare every exchange, queue and binding."""

    broker.declare_exchange(ExchangeSpec(TASKS_EXCHANGE, ExchangeType.DIRECT))
    broker.declare_exchange(ExchangeSpec(RETRY_EXCHANGE, ExchangeType.FANOUT))
    broker.declare_exchange(ExchangeSpec(REQUEUE_EXCHANGE, ExchangeType.TOPIC))
    broker.declare_exchange(ExchangeSpec(DEAD_LETTER_EXCHANGE, ExchangeType.FANOUT))
    broker.declare_exchange(ExchangeSpec(EVENTS_EXCHANGE, ExchangeType.TOPIC))

    broker.declare_queue(QueueSpec(TASKS_QUEUE, dead_letter_exchange=DEAD_LETTER_EXCHANGE))
    broker.declare_queue(QueueSpec(DEAD_LETTER_QUEUE))
    broker.bind_queue(queue_name=DEAD_LETTER_QUEUE, exchange=DEAD_LETTER_EXCHANGE)
    broker.bind_queue(queue_name=TASKS_QUEUE, exchange=REQUEUE_EXCHANGE, routing_key="#")

    for tier in retry_tiers:
        broker.declare_queue(
            QueueSpec(
                tier.queue_name,
                message_ttl_seconds=float(tier.delay_seconds),
                dead_letter_exchange=REQUEUE_EXCHANGE,
            ),
        )
        broker.bind_queue(queue_name=tier.queue_name, exchange=RETRY_EXCHANGE)

    for task_type in task_types:
        bind_task_type(broker, task_type)


def bind_task_type(broker: Broker, task_type: str) -> None:
    broker.bind_queue(
        queue_name=TASKS_QUEUE,
        exchange=TASKS_EXCHANGE,
        routing_key=task_routing_key(task_type),
    )
