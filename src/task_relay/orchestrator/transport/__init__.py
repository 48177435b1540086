"""Message transport: broker contracts, SQLite broker and task topology."""

from task_relay.orchestrator.transport.base import (
    Broker,
    Channel,
    Delivery,
    ExchangeSpec,
    ExchangeType,
    OutgoingMessage,
    QueueSpec,
)
from task_relay.orchestrator.transport.sqlite_broker import SQLiteBroker, SQLiteChannel

__all__ = [
    "Broker",
    "Channel",
    "Delivery",
    "ExchangeSpec",
    "ExchangeType",
    "OutgoingMessage",
    "QueueSpec",
    "SQLiteBroker",
    "SQLiteChannel",
]
