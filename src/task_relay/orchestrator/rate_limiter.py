"""Per-key token buckets throttling task bodies that call rate-limited providers.

Limits are process-local: each worker process refills its own buckets, so a
deployment running several nodes multiplies the effective rate.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from task_relay.orchestrator.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimit:
    """Permits per second, bucket capacity and the default wait for a permit."""

    rate: float = 10.0
    burst: int = 20
    timeout_seconds: float = 5.0


class TokenBucket:
    """Refills continuously at ``rate`` tokens per second up to ``burst``."""

    def __init__(self, limit: RateLimit, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self._clock = clock
        self._tokens = float(limit.burst)
        self._refilled_at = clock()
        self._lock = threading.Lock()

    def try_take(self) -> float:
        """Take one token; return 0.0 on success, else seconds until one is available."""

        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.limit.rate

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._refilled_at)
        self._tokens = min(float(self.limit.burst), self._tokens + elapsed * self.limit.rate)
        self._refilled_at = now


class RateLimiter:
    """Token bucket per provider or model key; unknown keys use ``default``."""

    def __init__(
        self,
        default: RateLimit | None = None,
        limits: Mapping[str, RateLimit] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.default = default or RateLimit()
        self.limits = dict(limits or {})
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def limit_for(self, key: str) -> RateLimit:
        return self.limits.get(key, self.default)

    def configured_rate(self, key: str) -> float:
        return self.limit_for(key).rate

    def available_permits(self, key: str) -> float:
        return self._bucket(key).available

    def acquire(self, key: str, *, timeout_seconds: float | None = None) -> bool:
        """Block until a permit for ``key`` is free or the timeout elapses.

        Args:
            key: Provider or model name, e.g. ``"openai"``.
            timeout_seconds: Maximum wait; defaults to the key's configured timeout.
        """

        bucket = self._bucket(key)
        timeout = bucket.limit.timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = self._clock() + max(0.0, timeout)
        while True:
            wait = bucket.try_take()
            if wait <= 0.0:
                return True
            remaining = deadline - self._clock()
            if remaining <= 0.0:
                logger.warning("No rate limit permit for %s within %.2fs", key, timeout)
                return False
            self._sleep(min(wait, remaining))

    def require(self, key: str, *, timeout_seconds: float | None = None) -> None:
        if not self.acquire(key, timeout_seconds=timeout_seconds):
            raise RateLimitExceededError(key)

    def _bucket(self, key: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                limit = self.limit_for(key)
                bucket = TokenBucket(limit, clock=self._clock)
                self._buckets[key] = bucket
                logger.debug(
                    "Created rate limiter for %s: %s/s burst=%s",
                    key,
                    limit.rate,
                    limit.burst,
                )
            return bucket
