"""Composition root: builds every orchestration component once from settings."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from task_relay.config import Settings
from task_relay.orchestrator.consumer import TaskConsumer
from task_relay.orchestrator.dead_letter import DeadLetterService
from task_relay.orchestrator.events import (
    BrokerEventForwarder,
    SubTaskAggregator,
    TaskEventAuditListener,
    TaskEventPublisher,
)
from task_relay.orchestrator.executables import builtin_executables
from task_relay.orchestrator.producer import TaskMessageProducer
from task_relay.orchestrator.rate_limiter import RateLimiter
from task_relay.orchestrator.registry import ExecutorRegistry, load_executables
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.services import TaskSubmissionService
from task_relay.orchestrator.state import TaskStateService
from task_relay.orchestrator.transport.sqlite_broker import SQLiteBroker
from task_relay.orchestrator.transport.topology import build_retry_tiers, declare_task_topology
from task_relay.orchestrator.worker import TaskWorkerPool
from task_relay.storage.alembic_runner import upgrade_head
from task_relay.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)


def build_default_registry(settings: Settings) -> ExecutorRegistry:
    """Built-in executables plus those named in ``settings.executables``."""

    return ExecutorRegistry([*builtin_executables(), *load_executables(settings.executables)])


class TaskRelayRuntime:
    """Owns the engine and wires services together; close it when done."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: ExecutorRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings.validate()
        self.settings = settings
        upgrade_head(settings.db_path)
        self.engine = build_sqlite_engine(
            db_path=settings.db_path,
            busy_timeout_ms=settings.transport.sqlite_busy_timeout_ms,
        )

        self.registry = registry if registry is not None else build_default_registry(settings)
        self.retry_tiers = build_retry_tiers(settings.transport.retry_delay_tiers_seconds)
        self.broker = SQLiteBroker(self.engine)
        declare_task_topology(
            self.broker,
            task_types=self.registry.task_types(),
            retry_tiers=self.retry_tiers,
        )

        self.repository = TaskRepository(self.engine)
        self.state = TaskStateService(
            self.repository,
            optimistic_lock_attempts=settings.state.optimistic_lock_attempts,
            reconcile_attempts=settings.state.sub_task_reconcile_attempts,
            backoff_seconds=settings.state.optimistic_lock_backoff_seconds,
            sleep=sleep,
        )
        self.producer = TaskMessageProducer(self.broker, retry_tiers=self.retry_tiers)
        self.events = TaskEventPublisher()
        self.events.subscribe(TaskEventAuditListener(self.repository))
        self.events.subscribe(BrokerEventForwarder(self.producer))
        self.aggregator = SubTaskAggregator(self.state, self.events)
        self.events.subscribe(self.aggregator)
        self.rate_limiter = RateLimiter(
            settings.rate_limit.default,
            settings.rate_limit.limits,
            sleep=sleep,
        )

        self.submission = TaskSubmissionService(
            state=self.state,
            producer=self.producer,
            events=self.events,
            registry=self.registry,
        )
        self.consumer = TaskConsumer(
            state=self.state,
            registry=self.registry,
            producer=self.producer,
            events=self.events,
            submission=self.submission,
            node_id=settings.worker.node_id,
            aggregator=self.aggregator,
            rate_limiter=self.rate_limiter,
        )
        self.dead_letters = DeadLetterService(
            broker=self.broker,
            state=self.state,
            producer=self.producer,
            events=self.events,
            scan_limit=settings.dead_letter.scan_limit,
        )
        logger.debug(
            "Runtime ready db=%s task_types=%s tiers=%s",
            settings.db_path,
            self.registry.task_types(),
            [tier.queue_name for tier in self.retry_tiers],
        )

    def build_worker_pool(self, *, concurrency: int | None = None) -> TaskWorkerPool:
        worker = self.settings.worker
        return TaskWorkerPool(
            broker=self.broker,
            consumer=self.consumer,
            state=self.state,
            node_id=worker.node_id,
            concurrency=concurrency or worker.concurrency,
            prefetch_count=self.settings.transport.prefetch_count,
            poll_interval_seconds=worker.poll_interval_seconds,
            stale_delivery_seconds=self.settings.transport.stale_delivery_seconds,
            stale_task_seconds=worker.stale_task_seconds,
            graceful_shutdown_seconds=worker.graceful_shutdown_seconds,
            maintenance_interval_seconds=worker.maintenance_interval_seconds,
            aggregator=self.aggregator,
        )

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> TaskRelayRuntime:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
