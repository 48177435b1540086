"""Queue workers: one channel per thread, processing one delivery at a time."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from task_relay.orchestrator.consumer import TaskConsumer
from task_relay.orchestrator.errors import TaskRelayError, TransportError
from task_relay.orchestrator.events import SubTaskAggregator
from task_relay.orchestrator.models import ConsumeOutcome
from task_relay.orchestrator.state import TaskStateService
from task_relay.orchestrator.transport.base import Broker, Channel
from task_relay.orchestrator.transport.topology import TASKS_QUEUE
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    discarded: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.discarded += other.discarded
        self.idle_polls += other.idle_polls

    def record(self, outcome: ConsumeOutcome) -> None:
        self.processed += 1
        if outcome is ConsumeOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is ConsumeOutcome.RETRIED:
            self.retried += 1
        elif outcome is ConsumeOutcome.DEAD_LETTERED:
            self.dead_lettered += 1
        else:
            self.discarded += 1


class _TaskBudget:
    """Shared cap on deliveries processed across worker threads."""

    def __init__(self, limit: int | None) -> None:
        self._remaining = limit
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self._remaining is None:
                return True
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def give_back(self) -> None:
        with self._lock:
            if self._remaining is not None:
                self._remaining += 1

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._remaining is not None and self._remaining <= 0


class TaskWorker:
    """Pulls from the primary queue and hands each delivery to the consumer."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: Broker,
        consumer: TaskConsumer,
        worker_id: str,
        prefetch_count: int = 2,
        poll_interval_seconds: float = 1.0,
        queue_name: str = TASKS_QUEUE,
    ) -> None:
        self.broker = broker
        self.consumer = consumer
        self.worker_id = worker_id
        self.prefetch_count = prefetch_count
        self.poll_interval_seconds = poll_interval_seconds
        self.queue_name = queue_name
        self._channel: Channel | None = None
        self._stop_requested = False

    def run_once(self, *, budget: _TaskBudget | None = None) -> WorkerRunSummary:
        """Process at most one delivery."""

        summary = WorkerRunSummary()
        if self._stop_requested or (budget is not None and not budget.take()):
            summary.idle_polls = 1
            return summary

        try:
            channel = self._ensure_channel()
            delivery = channel.get(self.queue_name)
        except TransportError as error:
            logger.warning(
                "Worker %s could not poll %s: %s",
                self.worker_id,
                self.queue_name,
                error,
            )
            self._drop_channel()
            delivery = None
        if delivery is None:
            if budget is not None:
                budget.give_back()
            summary.idle_polls = 1
            return summary

        summary.record(self.consumer.handle_delivery(channel, delivery))
        if not channel.is_open:
            logger.warning("Worker %s channel closed during processing; reopening", self.worker_id)
            self._channel = None
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
        budget: _TaskBudget | None = None,
    ) -> WorkerRunSummary:
        """Run until idle, stopped or ``max_tasks`` deliveries were processed.

        Args:
            max_tasks: Stop after processing this many deliveries (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
            budget: Task cap shared with other workers of the same pool.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while True:
            if self._stop_requested:
                return aggregate
            if max_tasks is not None and aggregate.processed >= max_tasks:
                return aggregate
            if budget is not None and budget.exhausted:
                return aggregate

            summary = self.run_once(budget=budget)
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate
                self._sleep_with_stop(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def heartbeat(self) -> None:
        channel = self._channel
        if channel is not None and channel.is_open:
            channel.heartbeat()

    def close(self) -> None:
        self._drop_channel()

    def _ensure_channel(self) -> Channel:
        if self._channel is None or not self._channel.is_open:
            channel = self.broker.open_channel(prefetch_count=self.prefetch_count)
            channel.consume(self.queue_name)
            self._channel = channel
        return self._channel

    def _drop_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            channel.close()
        except TransportError as error:
            logger.warning("Closing channel of worker %s failed: %s", self.worker_id, error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


class TaskWorkerPool:
    """Runs ``concurrency`` workers in threads plus periodic broker maintenance."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: Broker,
        consumer: TaskConsumer,
        state: TaskStateService,
        node_id: str,
        concurrency: int = 4,
        prefetch_count: int = 2,
        poll_interval_seconds: float = 1.0,
        stale_delivery_seconds: int = 1800,
        stale_task_seconds: int = 0,
        graceful_shutdown_seconds: int = 30,
        maintenance_interval_seconds: float = 5.0,
        aggregator: SubTaskAggregator | None = None,
    ) -> None:
        self.broker = broker
        self.consumer = consumer
        self.state = state
        self.aggregator = aggregator
        self.node_id = node_id
        self.stale_delivery_seconds = stale_delivery_seconds
        self.stale_task_seconds = stale_task_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.workers = [
            TaskWorker(
                broker=broker,
                consumer=consumer,
                worker_id=f"{node_id}/{index}",
                prefetch_count=prefetch_count,
                poll_interval_seconds=poll_interval_seconds,
            )
            for index in range(max(1, concurrency))
        ]
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        self.run_maintenance()
        try:
            return self.workers[0].run_once()
        finally:
            self.workers[0].close()

    def run(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run all workers until stopped, idle or the shared task cap is reached."""

        budget = _TaskBudget(max_tasks)
        results = [WorkerRunSummary() for _ in self.workers]
        threads = [
            threading.Thread(
                target=self._run_worker,
                args=(index, budget, max_idle_polls, results),
                name=f"task-relay-worker-{index}",
                daemon=True,
            )
            for index in range(len(self.workers))
        ]
        with self._signal_handlers():
            self.run_maintenance()
            for thread in threads:
                thread.start()
            next_maintenance = time.monotonic() + self.maintenance_interval_seconds
            while any(thread.is_alive() for thread in threads):
                if self._stop_requested:
                    break
                for thread in threads:
                    thread.join(timeout=0.2)
                if time.monotonic() >= next_maintenance:
                    self._run_maintenance_safely()
                    next_maintenance = time.monotonic() + self.maintenance_interval_seconds
            self._shutdown(threads)
        self.reconcile_parents()

        aggregate = WorkerRunSummary()
        for summary in results:
            aggregate.add(summary)
        logger.info(
            "Worker pool %s finished: processed=%s succeeded=%s retried=%s dead_lettered=%s",
            self.node_id,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.retried,
            aggregate.dead_lettered,
        )
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True
        for worker in self.workers:
            worker.request_stop()

    def run_maintenance(self) -> None:
        """Heartbeat leases and expire delayed messages, then recover abandoned work."""

        for worker in self.workers:
            worker.heartbeat()
        self.broker.process_expired()
        if self.stale_delivery_seconds > 0:
            self.broker.recover_stale_deliveries(older_than_seconds=self.stale_delivery_seconds)
        if self.stale_task_seconds > 0:
            cutoff = utc_now() - timedelta(seconds=self.stale_task_seconds)
            for record in self.state.list_stale_running(cutoff=cutoff):
                self.consumer.recover_stale_task(record)
        self.reconcile_parents()

    def reconcile_parents(self) -> None:
        """Recount running parents whose last sub-task aggregation was lost."""

        if self.aggregator is None:
            return
        for parent in self.state.list_running_parents():
            try:
                self.aggregator.reconcile(parent.task_id)
            except TaskRelayError as error:
                logger.warning("Reconciling parent %s failed: %s", parent.task_id, error)

    def _run_maintenance_safely(self) -> None:
        try:
            self.run_maintenance()
        except TaskRelayError as error:
            logger.warning("Broker maintenance failed: %s", error)

    def _run_worker(
        self,
        index: int,
        budget: _TaskBudget,
        max_idle_polls: int | None,
        results: list[WorkerRunSummary],
    ) -> None:
        worker = self.workers[index]
        try:
            results[index] = worker.run_loop(max_idle_polls=max_idle_polls, budget=budget)
        except Exception:  # noqa: BLE001
            logger.exception("Worker %s crashed", worker.worker_id)
        finally:
            worker.close()

    def _shutdown(self, threads: list[threading.Thread]) -> None:
        for worker in self.workers:
            worker.request_stop()
        deadline = time.monotonic() + self.graceful_shutdown_seconds
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [thread.name for thread in threads if thread.is_alive()]
        if alive:
            logger.warning(
                "Workers still busy after %ss graceful shutdown: %s",
                self.graceful_shutdown_seconds,
                ", ".join(alive),
            )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            logger.info("Received %s; stopping workers", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
