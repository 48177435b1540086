"""Durable AMQP-style broker stored in the application's SQLite database.

Topology (exchanges, queues, bindings) lives in memory and is declared by
every process at startup, the way AMQP clients redeclare it on connect.
Messages live in ``broker_messages``; a delivery is a lease recorded as the
owning ``channel_id`` and is only removed by ``ack``.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from task_relay.orchestrator.errors import TransportError, UnroutableMessageError
from task_relay.orchestrator.models import QueueInfo
from task_relay.orchestrator.transport.base import (
    DEFAULT_EXCHANGE,
    HEADER_DEATH,
    Delivery,
    ExchangeSpec,
    ExchangeType,
    OutgoingMessage,
    QueueSpec,
    topic_matches,
)
from task_relay.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_relay.storage.sqlmodel_models import BrokerMessage

logger = logging.getLogger(__name__)

EXPIRY_BATCH_SIZE = 500


class SQLiteBroker:
    """Broker facade over the ``broker_messages`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = threading.RLock()
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, QueueSpec] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self._consumers: dict[str, set[str]] = defaultdict(set)
        self._channels: dict[str, SQLiteChannel] = {}

    def declare_exchange(self, spec: ExchangeSpec) -> None:
        if spec.name == DEFAULT_EXCHANGE:
            raise TransportError("The default exchange cannot be redeclared.")
        with self._lock:
            existing = self._exchanges.get(spec.name)
            if existing is not None and existing != spec:
                raise TransportError(
                    f"Exchange {spec.name!r} already declared as {existing.exchange_type.value}",
                )
            self._exchanges[spec.name] = spec

    def declare_queue(self, spec: QueueSpec) -> None:
        with self._lock:
            existing = self._queues.get(spec.name)
            if existing is not None and existing != spec:
                raise TransportError(f"Queue {spec.name!r} already declared with other arguments")
            self._queues[spec.name] = spec

    def bind_queue(self, *, queue_name: str, exchange: str, routing_key: str = "") -> None:
        with self._lock:
            if exchange not in self._exchanges:
                raise TransportError(f"Exchange not declared: {exchange!r}")
            if queue_name not in self._queues:
                raise TransportError(f"Queue not declared: {queue_name!r}")
            binding = (queue_name, routing_key)
            if binding not in self._bindings[exchange]:
                self._bindings[exchange].append(binding)

    def exchanges(self) -> list[ExchangeSpec]:
        with self._lock:
            return list(self._exchanges.values())

    def queues(self) -> list[QueueSpec]:
        with self._lock:
            return list(self._queues.values())

    def bindings(self, exchange: str) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._bindings.get(exchange, []))

    def publish(
        self,
        *,
        exchange: str,
        routing_key: str,
        message: OutgoingMessage,
        mandatory: bool = False,
    ) -> None:
        """Route and durably store ``message``; returns once the write is committed."""

        targets = self._route(exchange, routing_key)
        if not targets:
            if mandatory:
                raise UnroutableMessageError(
                    f"No queue bound to exchange {exchange!r} for routing key {routing_key!r}",
                )
            logger.debug("Dropped unroutable message exchange=%r key=%r", exchange, routing_key)
            return

        now = utc_now()
        message_id = message.message_id or uuid4().hex
        try:
            with Session(self.engine) as session:
                for queue_name in targets:
                    session.add(
                        self._build_row(
                            queue_name=queue_name,
                            exchange=exchange,
                            routing_key=routing_key,
                            message_id=message_id,
                            correlation_id=message.correlation_id,
                            headers=message.headers,
                            body=message.body,
                            now=now,
                        ),
                    )
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError(
                f"Publish to exchange {exchange!r} with key {routing_key!r} failed",
            ) from error
        logger.debug(
            "Published message %s exchange=%r key=%r queues=%s",
            message_id,
            exchange,
            routing_key,
            targets,
        )

    def open_channel(self, *, prefetch_count: int | None = None) -> SQLiteChannel:
        channel = SQLiteChannel(self, prefetch_count=prefetch_count)
        with self._lock:
            self._channels[channel.channel_id] = channel
        return channel

    def queue_info(self, queue_name: str) -> QueueInfo:
        self._require_queue(queue_name)
        try:
            with Session(self.engine) as session:
                message_count = session.exec(
                    select(func.count())
                    .select_from(BrokerMessage)
                    .where(
                        BrokerMessage.queue_name == queue_name,
                        col(BrokerMessage.channel_id).is_(None),
                    ),
                ).one()
        except SQLAlchemyError as error:
            raise TransportError(f"Queue inspection failed for {queue_name!r}") from error
        with self._lock:
            consumer_count = len(self._consumers.get(queue_name, ()))
        return QueueInfo(
            queue_name=queue_name,
            message_count=int(message_count),
            consumer_count=consumer_count,
        )

    def purge(self, queue_name: str) -> int:
        """Remove every ready message from the queue; leased messages are kept."""

        self._require_queue(queue_name)
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(BrokerMessage).where(
                        col(BrokerMessage.queue_name) == queue_name,
                        col(BrokerMessage.channel_id).is_(None),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError(f"Purge failed for {queue_name!r}") from error
        purged = int(result.rowcount or 0)
        logger.info("Purged %s message(s) from %s", purged, queue_name)
        return purged

    def process_expired(self) -> int:
        """Dead-letter ready messages whose queue TTL has elapsed."""

        with self._lock:
            ttl_queues = [
                spec.name for spec in self._queues.values() if spec.message_ttl_seconds is not None
            ]
        if not ttl_queues:
            return 0

        now = utc_now()
        moved = 0
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(BrokerMessage)
                    .where(
                        col(BrokerMessage.queue_name).in_(ttl_queues),
                        col(BrokerMessage.channel_id).is_(None),
                        col(BrokerMessage.expires_at) <= to_db_datetime(now),
                    )
                    .order_by(col(BrokerMessage.id))
                    .limit(EXPIRY_BATCH_SIZE),
                ).all()
                expired = [_to_delivery(row) for row in rows]
                for delivery in expired:
                    result = session.exec(
                        sa_delete(BrokerMessage).where(
                            col(BrokerMessage.id) == delivery.delivery_tag,
                            col(BrokerMessage.channel_id).is_(None),
                        ),
                    )
                    if result.rowcount != 1:
                        continue
                    self._dead_letter(session, delivery, reason="expired", now=now)
                    moved += 1
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError("Expiry processing failed") from error
        if moved:
            logger.debug("Dead-lettered %s expired message(s)", moved)
        return moved

    def recover_stale_deliveries(self, *, older_than_seconds: float) -> int:
        """Release leases held longer than ``older_than_seconds`` without a heartbeat."""

        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(BrokerMessage)
                    .where(
                        col(BrokerMessage.channel_id).is_not(None),
                        col(BrokerMessage.delivered_at) < to_db_datetime(cutoff),
                    )
                    .values(channel_id=None, delivered_at=None, redelivered=True),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError("Stale delivery recovery failed") from error
        released = int(result.rowcount or 0)
        if released:
            logger.warning("Released %s stale delivery lease(s)", released)
        return released

    def _claim(self, queue_name: str, *, channel_id: str) -> Delivery | None:
        self._require_queue(queue_name)
        self.process_expired()
        try:
            while True:
                now = utc_now()
                with Session(self.engine) as session:
                    candidate = session.exec(
                        select(BrokerMessage)
                        .where(
                            BrokerMessage.queue_name == queue_name,
                            col(BrokerMessage.channel_id).is_(None),
                            or_(
                                col(BrokerMessage.expires_at).is_(None),
                                col(BrokerMessage.expires_at) > to_db_datetime(now),
                            ),
                        )
                        .order_by(col(BrokerMessage.id))
                        .limit(1),
                    ).one_or_none()
                    if candidate is None:
                        return None
                    delivery = _to_delivery(candidate)

                    result = session.exec(
                        sa_update(BrokerMessage)
                        .where(
                            col(BrokerMessage.id) == delivery.delivery_tag,
                            col(BrokerMessage.channel_id).is_(None),
                        )
                        .values(
                            channel_id=channel_id,
                            delivered_at=to_db_datetime(now),
                            delivery_count=candidate.delivery_count + 1,
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()
                    return delivery
        except SQLAlchemyError as error:
            raise TransportError(f"Consume from {queue_name!r} failed") from error

    def _ack(self, delivery_tag: int, *, channel_id: str) -> None:
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(BrokerMessage).where(
                        col(BrokerMessage.id) == delivery_tag,
                        col(BrokerMessage.channel_id) == channel_id,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise TransportError(f"Unknown delivery tag {delivery_tag}")
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError(f"Ack of delivery {delivery_tag} failed") from error

    def _nack(self, delivery_tag: int, *, channel_id: str, requeue: bool) -> None:
        if requeue:
            released = self._release(
                col(BrokerMessage.id) == delivery_tag,
                col(BrokerMessage.channel_id) == channel_id,
            )
            if released != 1:
                raise TransportError(f"Unknown delivery tag {delivery_tag}")
            return

        now = utc_now()
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(BrokerMessage).where(
                        BrokerMessage.id == delivery_tag,
                        BrokerMessage.channel_id == channel_id,
                    ),
                ).one_or_none()
                if row is None:
                    raise TransportError(f"Unknown delivery tag {delivery_tag}")
                delivery = _to_delivery(row)
                result = session.exec(
                    sa_delete(BrokerMessage).where(
                        col(BrokerMessage.id) == delivery_tag,
                        col(BrokerMessage.channel_id) == channel_id,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise TransportError(f"Unknown delivery tag {delivery_tag}")
                self._dead_letter(session, delivery, reason="rejected", now=now)
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError(f"Reject of delivery {delivery_tag} failed") from error

    def _touch(self, *, channel_id: str) -> None:
        try:
            with Session(self.engine) as session:
                session.exec(
                    sa_update(BrokerMessage)
                    .where(col(BrokerMessage.channel_id) == channel_id)
                    .values(delivered_at=to_db_datetime(utc_now())),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError(f"Heartbeat for channel {channel_id} failed") from error

    def _release_channel(self, channel_id: str) -> int:
        with self._lock:
            self._channels.pop(channel_id, None)
            for consumers in self._consumers.values():
                consumers.discard(channel_id)
        return self._release(col(BrokerMessage.channel_id) == channel_id)

    def _release(self, *conditions: Any) -> int:
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(BrokerMessage)
                    .where(*conditions)
                    .values(channel_id=None, delivered_at=None, redelivered=True),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise TransportError("Releasing delivery leases failed") from error
        return int(result.rowcount or 0)

    def _register_consumer(self, queue_name: str, channel_id: str) -> None:
        self._require_queue(queue_name)
        with self._lock:
            self._consumers[queue_name].add(channel_id)

    def _dead_letter(
        self,
        session: Session,
        delivery: Delivery,
        *,
        reason: str,
        now: datetime,
    ) -> None:
        with self._lock:
            spec = self._queues.get(delivery.queue_name)
        if spec is None or spec.dead_letter_exchange is None:
            logger.debug("Discarded %s message from %s", reason, delivery.queue_name)
            return
        routing_key = spec.dead_letter_routing_key or delivery.routing_key
        targets = self._route(spec.dead_letter_exchange, routing_key)
        if not targets:
            logger.warning(
                "Dead-letter exchange %r has no queue for key %r; %s message %s dropped",
                spec.dead_letter_exchange,
                routing_key,
                reason,
                delivery.message_id,
            )
            return
        headers = _with_death_entry(delivery, reason=reason, now=now)
        for queue_name in targets:
            session.add(
                self._build_row(
                    queue_name=queue_name,
                    exchange=spec.dead_letter_exchange,
                    routing_key=routing_key,
                    message_id=delivery.message_id,
                    correlation_id=delivery.correlation_id,
                    headers=headers,
                    body=delivery.body,
                    now=now,
                ),
            )

    def _route(self, exchange: str, routing_key: str) -> list[str]:
        with self._lock:
            if exchange == DEFAULT_EXCHANGE:
                return [routing_key] if routing_key in self._queues else []
            spec = self._exchanges.get(exchange)
            if spec is None:
                raise TransportError(f"Exchange not declared: {exchange!r}")
            matched: list[str] = []
            for queue_name, binding_key in self._bindings.get(exchange, []):
                if queue_name in matched:
                    continue
                if spec.exchange_type is ExchangeType.FANOUT:
                    matched.append(queue_name)
                elif spec.exchange_type is ExchangeType.DIRECT and binding_key == routing_key:
                    matched.append(queue_name)
                elif spec.exchange_type is ExchangeType.TOPIC and topic_matches(
                    binding_key,
                    routing_key,
                ):
                    matched.append(queue_name)
            return matched

    def _build_row(  # noqa: PLR0913
        self,
        *,
        queue_name: str,
        exchange: str,
        routing_key: str,
        message_id: str,
        correlation_id: str | None,
        headers: dict[str, Any],
        body: str,
        now: datetime,
    ) -> BrokerMessage:
        with self._lock:
            ttl = self._queues[queue_name].message_ttl_seconds
        expires_at = to_db_datetime(now + timedelta(seconds=ttl)) if ttl is not None else None
        return BrokerMessage(
            queue_name=queue_name,
            exchange=exchange,
            routing_key=routing_key,
            message_id=message_id,
            correlation_id=correlation_id,
            headers_json=dump_json(headers or None),
            body=body,
            enqueued_at=to_db_datetime(now),
            expires_at=expires_at,
        )

    def _require_queue(self, queue_name: str) -> None:
        with self._lock:
            if queue_name not in self._queues:
                raise TransportError(f"Queue not declared: {queue_name!r}")


class SQLiteChannel:
    """One consumer session; leases are released when the channel closes."""

    def __init__(self, broker: SQLiteBroker, *, prefetch_count: int | None) -> None:
        self.channel_id = f"ch-{uuid4().hex}"
        self.prefetch_count = prefetch_count
        self._broker = broker
        self._unacked: set[int] = set()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def consume(self, queue_name: str) -> None:
        self._ensure_open()
        self._broker._register_consumer(queue_name, self.channel_id)

    def get(self, queue_name: str) -> Delivery | None:
        self._ensure_open()
        if self.prefetch_count is not None and len(self._unacked) >= self.prefetch_count:
            return None
        delivery = self._broker._claim(queue_name, channel_id=self.channel_id)
        if delivery is not None:
            self._unacked.add(delivery.delivery_tag)
        return delivery

    def ack(self, delivery_tag: int) -> None:
        self._ensure_open()
        self._broker._ack(delivery_tag, channel_id=self.channel_id)
        self._unacked.discard(delivery_tag)

    def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        self._ensure_open()
        self._broker._nack(delivery_tag, channel_id=self.channel_id, requeue=requeue)
        self._unacked.discard(delivery_tag)

    def heartbeat(self) -> None:
        if self._open and self._unacked:
            self._broker._touch(channel_id=self.channel_id)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._unacked.clear()
        released = self._broker._release_channel(self.channel_id)
        if released:
            logger.info("Channel %s closed; %s delivery(ies) returned", self.channel_id, released)

    def __enter__(self) -> SQLiteChannel:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if not self._open:
            raise TransportError(f"Channel {self.channel_id} is closed")


def _to_delivery(row: BrokerMessage) -> Delivery:
    return Delivery(
        delivery_tag=int(row.id or 0),
        queue_name=row.queue_name,
        exchange=row.exchange,
        routing_key=row.routing_key,
        message_id=row.message_id,
        correlation_id=row.correlation_id,
        headers=dict(load_json(row.headers_json) or {}),
        body=row.body,
        redelivered=bool(row.redelivered),
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
    )


def _with_death_entry(delivery: Delivery, *, reason: str, now: datetime) -> dict[str, Any]:
    headers = dict(delivery.headers)
    deaths: list[dict[str, Any]] = list(headers.get(HEADER_DEATH) or [])
    for index, entry in enumerate(deaths):
        if entry.get("queue") == delivery.queue_name and entry.get("reason") == reason:
            updated = {**entry, "count": int(entry.get("count", 1)) + 1, "time": now.isoformat()}
            deaths.pop(index)
            deaths.insert(0, updated)
            break
    else:
        deaths.insert(
            0,
            {
                "queue": delivery.queue_name,
                "reason": reason,
                "count": 1,
                "exchange": delivery.exchange,
                "routing-keys": [delivery.routing_key],
                "time": now.isoformat(),
            },
        )
    headers[HEADER_DEATH] = deaths
    return headers
