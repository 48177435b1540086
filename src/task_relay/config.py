"""Runtime configuration for the task store, transport and workers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from task_relay.orchestrator.rate_limiter import RateLimit
from task_relay.orchestrator.transport.topology import DEFAULT_RETRY_DELAY_TIERS_SECONDS


def _default_node_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class StateSettings:
    """Optimistic concurrency policy for task record writes."""

    optimistic_lock_attempts: int = 3
    optimistic_lock_backoff_seconds: float = 0.05
    sub_task_reconcile_attempts: int = 20


@dataclass(slots=True)
class TransportSettings:
    """Broker and delivery settings."""

    retry_delay_tiers_seconds: tuple[int, ...] = DEFAULT_RETRY_DELAY_TIERS_SECONDS
    prefetch_count: int = 2
    sqlite_busy_timeout_ms: int = 5_000
    stale_delivery_seconds: int = 1_800


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    concurrency: int = 4
    poll_interval_seconds: float = 1.0
    node_id: str = field(default_factory=_default_node_id)
    stale_task_seconds: int = 0
    graceful_shutdown_seconds: int = 30
    maintenance_interval_seconds: float = 5.0


@dataclass(slots=True)
class RateLimitSettings:
    """Token bucket used by task bodies; ``limits`` overrides it per provider or model."""

    default: RateLimit = field(default_factory=RateLimit)
    limits: dict[str, RateLimit] = field(default_factory=dict)


@dataclass(slots=True)
class DeadLetterSettings:
    scan_limit: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_relay.db")
    state: StateSettings = field(default_factory=StateSettings)
    transport: TransportSettings = field(default_factory=TransportSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    executables: tuple[str, ...] = ()

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_RELAY_DB_PATH", ".task_relay.db")),
            state=StateSettings(
                optimistic_lock_attempts=int(
                    os.getenv("TASK_RELAY_OPTIMISTIC_LOCK_ATTEMPTS", "3"),
                ),
                optimistic_lock_backoff_seconds=float(
                    os.getenv("TASK_RELAY_OPTIMISTIC_LOCK_BACKOFF_SECONDS", "0.05"),
                ),
                sub_task_reconcile_attempts=int(
                    os.getenv("TASK_RELAY_SUB_TASK_RECONCILE_ATTEMPTS", "20"),
                ),
            ),
            transport=TransportSettings(
                retry_delay_tiers_seconds=_env_int_tuple(
                    "TASK_RELAY_RETRY_DELAY_TIERS_SECONDS",
                    DEFAULT_RETRY_DELAY_TIERS_SECONDS,
                ),
                prefetch_count=int(os.getenv("TASK_RELAY_PREFETCH_COUNT", "2")),
                sqlite_busy_timeout_ms=int(os.getenv("TASK_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                stale_delivery_seconds=int(
                    os.getenv("TASK_RELAY_STALE_DELIVERY_SECONDS", "1800"),
                ),
            ),
            worker=WorkerSettings(
                concurrency=int(os.getenv("TASK_RELAY_WORKER_CONCURRENCY", "4")),
                poll_interval_seconds=float(
                    os.getenv("TASK_RELAY_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                node_id=os.getenv("TASK_RELAY_NODE_ID") or _default_node_id(),
                stale_task_seconds=int(os.getenv("TASK_RELAY_STALE_TASK_SECONDS", "0")),
                graceful_shutdown_seconds=int(
                    os.getenv("TASK_RELAY_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                maintenance_interval_seconds=float(
                    os.getenv("TASK_RELAY_WORKER_MAINTENANCE_INTERVAL_SECONDS", "5.0"),
                ),
            ),
            dead_letter=DeadLetterSettings(
                scan_limit=int(os.getenv("TASK_RELAY_DLQ_SCAN_LIMIT", "1000")),
            ),
            rate_limit=_rate_limit_from_env(),
            executables=_env_csv("TASK_RELAY_EXECUTABLES"),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.state.optimistic_lock_attempts < 1:
            raise ValueError("TASK_RELAY_OPTIMISTIC_LOCK_ATTEMPTS must be >= 1.")
        if self.state.optimistic_lock_backoff_seconds < 0:
            raise ValueError("TASK_RELAY_OPTIMISTIC_LOCK_BACKOFF_SECONDS must be >= 0.")
        if self.state.sub_task_reconcile_attempts < 1:
            raise ValueError("TASK_RELAY_SUB_TASK_RECONCILE_ATTEMPTS must be >= 1.")
        tiers = self.transport.retry_delay_tiers_seconds
        if not tiers:
            raise ValueError("TASK_RELAY_RETRY_DELAY_TIERS_SECONDS must list at least one delay.")
        if any(delay <= 0 for delay in tiers):
            raise ValueError("TASK_RELAY_RETRY_DELAY_TIERS_SECONDS values must be > 0.")
        if list(tiers) != sorted(tiers):
            raise ValueError("TASK_RELAY_RETRY_DELAY_TIERS_SECONDS must be non-decreasing.")
        if self.transport.prefetch_count < 1:
            raise ValueError("TASK_RELAY_PREFETCH_COUNT must be >= 1.")
        if self.transport.stale_delivery_seconds < 0:
            raise ValueError("TASK_RELAY_STALE_DELIVERY_SECONDS must be >= 0.")
        if self.worker.concurrency < 1:
            raise ValueError("TASK_RELAY_WORKER_CONCURRENCY must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASK_RELAY_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_task_seconds < 0:
            raise ValueError("TASK_RELAY_STALE_TASK_SECONDS must be >= 0.")
        if not self.worker.node_id.strip():
            raise ValueError("TASK_RELAY_NODE_ID must not be empty.")
        if self.dead_letter.scan_limit < 1:
            raise ValueError("TASK_RELAY_DLQ_SCAN_LIMIT must be >= 1.")
        for key, limit in {"default": self.rate_limit.default, **self.rate_limit.limits}.items():
            if limit.rate <= 0 or limit.burst < 1 or limit.timeout_seconds < 0:
                raise ValueError(
                    f"Invalid rate limit for {key!r}: rate must be > 0, burst >= 1, "
                    "timeout >= 0.",
                )
        for entry in self.executables:
            if ":" not in entry:
                raise ValueError(
                    f"Invalid TASK_RELAY_EXECUTABLES entry {entry!r}; use module:attr.",
                )


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    values = _env_csv(name)
    if not values:
        return default
    try:
        return tuple(int(value) for value in values)
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {os.getenv(name)!r}") from error


def _rate_limit_from_env() -> RateLimitSettings:
    """``TASK_RELAY_RATE_LIMITS`` lists ``key=rate`` or ``key=rate:burst`` entries."""

    default = RateLimit(
        rate=float(os.getenv("TASK_RELAY_RATE_LIMIT_DEFAULT_RATE", "10")),
        burst=int(os.getenv("TASK_RELAY_RATE_LIMIT_DEFAULT_BURST", "20")),
        timeout_seconds=float(os.getenv("TASK_RELAY_RATE_LIMIT_TIMEOUT_SECONDS", "5")),
    )
    limits: dict[str, RateLimit] = {}
    for entry in _env_csv("TASK_RELAY_RATE_LIMITS"):
        key, separator, value = entry.partition("=")
        rate, _, burst = value.partition(":")
        try:
            if not separator or not key.strip():
                raise ValueError(entry)
            limits[key.strip()] = RateLimit(
                rate=float(rate),
                burst=int(burst) if burst else default.burst,
                timeout_seconds=default.timeout_seconds,
            )
        except ValueError as error:
            raise ValueError(
                f"Invalid TASK_RELAY_RATE_LIMITS entry {entry!r}; use key=rate[:burst].",
            ) from error
    return RateLimitSettings(default=default, limits=limits)
