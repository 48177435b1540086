"""Shared test fixtures."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from task_relay.config import (
    Settings,
    StateSettings,
    TransportSettings,
    WorkerSettings,
)
from task_relay.orchestrator.consumer import TaskConsumer
from task_relay.orchestrator.models import ConsumeOutcome
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport import sqlite_broker
from task_relay.orchestrator.transport.topology import TASKS_QUEUE
from task_relay.storage.alembic_runner import upgrade_head
from task_relay.storage.common import build_sqlite_engine, utc_now


class BrokerClock:
    """Shifts the broker's notion of "now" so TTL and lease checks run without sleeping."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self.offset = timedelta(0)
        monkeypatch.setattr(sqlite_broker, "utc_now", lambda: utc_now() + self.offset)

    def advance(self, seconds: float) -> None:
        self.offset += timedelta(seconds=seconds)


def make_settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        state=StateSettings(optimistic_lock_attempts=3, optimistic_lock_backoff_seconds=0.0),
        transport=TransportSettings(retry_delay_tiers_seconds=(1, 2), prefetch_count=2),
        worker=WorkerSettings(
            concurrency=2,
            poll_interval_seconds=0.01,
            node_id="test-node",
            graceful_shutdown_seconds=5,
            maintenance_interval_seconds=0.05,
        ),
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path / "relay.db")


@pytest.fixture()
def runtime(settings: Settings) -> Iterator[TaskRelayRuntime]:
    with TaskRelayRuntime(settings, sleep=lambda _: None) as built:
        yield built


@pytest.fixture()
def engine(tmp_path: Path) -> Iterator[Engine]:
    db_path = tmp_path / "store.db"
    upgrade_head(db_path)
    built = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    yield built
    built.dispose()


@pytest.fixture()
def broker_clock(monkeypatch: pytest.MonkeyPatch) -> BrokerClock:
    return BrokerClock(monkeypatch)


@pytest.fixture()
def drain(runtime: TaskRelayRuntime) -> Callable[..., list[ConsumeOutcome]]:
    """Consume from the primary queue on one channel until it is empty or ``limit`` is hit."""

    def _drain(
        *,
        limit: int = 100,
        consumer: TaskConsumer | None = None,
    ) -> list[ConsumeOutcome]:
        handler = consumer or runtime.consumer
        outcomes: list[ConsumeOutcome] = []
        with runtime.broker.open_channel(prefetch_count=1) as channel:
            while len(outcomes) < limit:
                delivery = channel.get(TASKS_QUEUE)
                if delivery is None:
                    break
                outcomes.append(handler.handle_delivery(channel, delivery))
        return outcomes

    return _drain


@pytest.fixture()
def restore_root_logging() -> Iterator[None]:
    """CLI invocations reconfigure the root logger; put pytest's handlers back afterwards."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
