"""Broker-neutral transport contracts: exchanges, queues, channels, deliveries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from task_relay.orchestrator.models import QueueInfo

HEADER_TASK_ID = "x-task-id"
HEADER_USER_ID = "x-user-id"
HEADER_TASK_TYPE = "x-task-type"
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_ORIGINAL_ROUTING_KEY = "x-original-routing-key"
HEADER_DEATH = "x-death"

DEFAULT_EXCHANGE = ""


class ExchangeType(str, Enum):
    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"


@dataclass(slots=True, frozen=True)
class ExchangeSpec:
    name: str
    exchange_type: ExchangeType


@dataclass(slots=True, frozen=True)
class QueueSpec:
    """Durable queue declaration.

    Messages older than ``message_ttl_seconds`` and messages rejected without
    requeue are republished to ``dead_letter_exchange`` when one is set.
    """

    name: str
    message_ttl_seconds: float | None = None
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None


@dataclass(slots=True)
class OutgoingMessage:
    body: str
    headers: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
    message_id: str | None = None


@dataclass(slots=True)
class Delivery:
    """A message leased to one channel until acked, nacked or the channel closes."""

    delivery_tag: int
    queue_name: str
    exchange: str
    routing_key: str
    message_id: str
    correlation_id: str | None
    headers: dict[str, Any]
    body: str
    redelivered: bool
    enqueued_at: datetime


class Channel(Protocol):
    """Consumer-side session with its own leases and prefetch window."""

    channel_id: str

    def consume(self, queue_name: str) -> None: ...

    def get(self, queue_name: str) -> Delivery | None: ...

    def ack(self, delivery_tag: int) -> None: ...

    def nack(self, delivery_tag: int, *, requeue: bool) -> None: ...

    def heartbeat(self) -> None: ...

    def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...


class Broker(Protocol):
    """Durable message broker with AMQP-style routing."""

    def declare_exchange(self, spec: ExchangeSpec) -> None: ...

    def declare_queue(self, spec: QueueSpec) -> None: ...

    def bind_queue(self, *, queue_name: str, exchange: str, routing_key: str = "") -> None: ...

    def publish(
        self,
        *,
        exchange: str,
        routing_key: str,
        message: OutgoingMessage,
        mandatory: bool = False,
    ) -> None: ...

    def open_channel(self, *, prefetch_count: int | None = None) -> Channel: ...

    def queue_info(self, queue_name: str) -> QueueInfo: ...

    def purge(self, queue_name: str) -> int: ...

    def process_expired(self) -> int: ...

    def recover_stale_deliveries(self, *, older_than_seconds: float) -> int: ...


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` is zero or more."""

    return _match_words(pattern.split("."), routing_key.split(".") if routing_key else [])


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[index:]) for index in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False
