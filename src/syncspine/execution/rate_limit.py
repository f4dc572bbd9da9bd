"""Rate Limiting — per-endpoint-class token buckets.

Manifesto:
External sources (Keepa, SP-API) enforce quotas. Exceeding them costs a
429 and, after repeated abuse, a ban. The bucket throttles outgoing calls
*before* the limit is hit, and when the server disagrees with our local
estimate the server wins.

ARCHITECTURE
────────────
::

    TokenBucket(rate, capacity, name)
      ├── .acquire(n, block=False)       ─ atomic debit; optionally wait for it
      ├── .wait_for_tokens(n)            ─ timed wait until >= n tokens (no spin)
      ├── .update_from_headers(remaining)─ adopt server-reported token count
      ├── .handle_rate_limit_error(...)  ─ 429 → RateLimitDecision(wait, retry?)
      ├── .record_success()              ─ reset consecutive-throttle counter
      └── .metrics()                     ─ tokens, wait time, throttled count

    BucketStateStore(conn)      ─ rate_limit_buckets row per bucket name
    RateLimiterRegistry(limits) ─ one bucket per endpoint class, built lazily

    All buckets are thread-safe (internal Lock); sleeping happens outside it.

BEST PRACTICES
──────────────
- Charge the real cost: Keepa bills per identifier, SP-API per request.
- Feed every response's remaining-token header to ``update_from_headers``.
- Let ``handle_rate_limit_error`` decide the wait; never retry a 429
  immediately.

Related modules:
    retry.py              — backoff on transient failures
    ingestion/sources.py  — gates every source request through a bucket

Example::

    bucket = TokenBucket(rate=5, capacity=20, name="sp_api")
    bucket.wait_for_tokens(1)
    if bucket.acquire():
        make_api_call()

Tags:
    syncspine, execution, rate-limit, throttle, token-bucket

Doc-Types:
    api-reference
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from syncspine.core.errors import ConfigError
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.settings import EndpointRateLimit, SyncSettings
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """What to do after the source throttled a request."""

    wait_seconds: float
    should_retry: bool

    @property
    def wait_ms(self) -> int:
        return int(round(self.wait_seconds * 1000))


@dataclass(frozen=True)
class BucketMetrics:
    """Point-in-time bucket counters for operational visibility."""

    name: str
    tokens: float
    capacity: float
    rate: float
    total_requests: int
    throttled_requests: int
    total_wait_seconds: float
    consecutive_throttles: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tokens": round(self.tokens, 3),
            "capacity": self.capacity,
            "rate": self.rate,
            "total_requests": self.total_requests,
            "throttled_requests": self.throttled_requests,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
            "consecutive_throttles": self.consecutive_throttles,
        }


class BucketStateStore:
    """Persists bucket levels so a restarted process does not assume a full bucket."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.Lock()
        if not self._schema.has("rate_limit_buckets"):
            logger.warning("rate_limit_buckets table unavailable; bucket state is not persisted")

    def load(self, name: str) -> tuple[float, datetime] | None:
        if not self._schema.has("rate_limit_buckets"):
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT tokens, updated_at FROM rate_limit_buckets WHERE name = ?", (name,)
            ).fetchone()
        if row is None:
            return None
        return float(row[0]), from_iso8601(row[1])  # type: ignore[return-value]

    def save(self, name: str, tokens: float) -> None:
        if not self._schema.has("rate_limit_buckets"):
            return
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO rate_limit_buckets (name, tokens, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (name) DO UPDATE SET
                    tokens = excluded.tokens,
                    updated_at = excluded.updated_at
                """,
                (name, tokens, to_iso8601(utc_now())),
            )
            self._conn.commit()


@dataclass
class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at ``rate`` per second up to ``capacity``. Allows
    bursts up to capacity, then limits to rate.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens (burst size)
        name: Endpoint class this bucket guards
        initial_tokens: Starting level (None = full)
        max_inline_retries: Consecutive throttles tolerated before giving up
        jitter: Fraction of the throttle wait added at random
        escalation_step: Extra seconds per consecutive throttle after the first
        escalation_cap: Ceiling on the escalation
        state_store: Optional persistence for the token level
    """

    rate: float  # tokens per second
    capacity: float  # max tokens
    name: str = "default"
    initial_tokens: float | None = None
    max_inline_retries: int = 3
    jitter: float = 0.1
    escalation_step: float = 0.0
    escalation_cap: float = 0.0
    state_store: BucketStateStore | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _tokens: float = field(default=0.0, init=False)
    _last_update: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _state_loaded: bool = field(default=False, init=False)
    _total_requests: int = field(default=0, init=False)
    _total_wait: float = field(default=0.0, init=False)
    _throttled: int = field(default=0, init=False)
    _consecutive: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.rate <= 0 or self.capacity <= 0:
            raise ConfigError(f"Bucket {self.name!r} needs a positive rate and capacity")
        start = self.capacity if self.initial_tokens is None else self.initial_tokens
        self._tokens = max(0.0, min(self.capacity, start))
        self._last_update = self.clock()

    @classmethod
    def from_config(
        cls,
        name: str,
        config: EndpointRateLimit,
        *,
        state_store: BucketStateStore | None = None,
        **kwargs: Any,
    ) -> TokenBucket:
        return cls(
            rate=config.rate,
            capacity=config.capacity,
            name=name,
            initial_tokens=config.initial_tokens,
            max_inline_retries=config.max_inline_retries,
            jitter=config.jitter,
            escalation_step=config.escalation_seconds,
            escalation_cap=config.escalation_cap_seconds,
            state_store=state_store,
            **kwargs,
        )

    # ------------------------------------------------------------------ #
    # Internals (call with _lock held)
    # ------------------------------------------------------------------ #

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self._last_update
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_update = now

    def _ensure_loaded(self) -> None:
        if self._state_loaded or self.state_store is None:
            return
        self._state_loaded = True
        saved = self.state_store.load(self.name)
        if saved is None:
            return
        tokens, saved_at = saved
        offline = max(0.0, (utc_now() - saved_at).total_seconds())
        self._tokens = min(self.capacity, max(0.0, tokens) + offline * self.rate)
        self._last_update = self.clock()

    def _persist(self) -> None:
        if self.state_store is not None:
            self.state_store.save(self.name, self._tokens)

    def _deficit_wait(self, tokens: float) -> float:
        return max(0.0, (tokens - self._tokens) / self.rate)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def acquire(self, tokens: float = 1, block: bool = False) -> bool:
        """Debit ``tokens`` if available.

        With ``block=True`` waits (timed sleeps, outside the lock) until the
        debit succeeds. Returns False only when not blocking and short.

        Raises:
            ValueError: ``tokens`` exceeds capacity (it could never succeed).
        """
        if tokens > self.capacity:
            raise ValueError(
                f"Requested {tokens} tokens from bucket {self.name!r} of capacity {self.capacity}"
            )
        throttled = False
        while True:
            with self._lock:
                self._ensure_loaded()
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    self._total_requests += 1
                    self._persist()
                    return True
                if not block:
                    return False
                if not throttled:
                    self._throttled += 1
                    throttled = True
                wait = self._deficit_wait(tokens)
            self.sleep(wait)
            with self._lock:
                self._total_wait += wait

    def wait_for_tokens(self, tokens: float = 1) -> float:
        """Wait until the bucket holds at least ``tokens``; returns seconds waited.

        Does not debit. Each sleep is the exact time the deficit takes to
        refill, re-checked afterwards since other threads may have drawn.

        Raises:
            ValueError: ``tokens`` exceeds capacity.
        """
        if tokens > self.capacity:
            raise ValueError(
                f"Requested {tokens} tokens from bucket {self.name!r} of capacity {self.capacity}"
            )
        waited = 0.0
        while True:
            with self._lock:
                self._ensure_loaded()
                self._refill()
                if self._tokens >= tokens:
                    if waited:
                        self._total_wait += waited
                    return waited
                wait = self._deficit_wait(tokens)
            if waited == 0.0:
                logger.debug("bucket %s waiting %.2fs for %s tokens", self.name, wait, tokens)
            self.sleep(wait)
            waited += wait

    def get_wait_time(self, tokens: float = 1) -> float:
        """Seconds until ``tokens`` are available (0 if available now)."""
        with self._lock:
            self._ensure_loaded()
            self._refill()
            return self._deficit_wait(tokens)

    def update_from_headers(self, tokens_remaining: float | None) -> None:
        """Adopt the server's remaining-token count; server state wins."""
        if tokens_remaining is None:
            return
        with self._lock:
            self._ensure_loaded()
            self._tokens = max(0.0, min(self.capacity, float(tokens_remaining)))
            self._last_update = self.clock()
            self._consecutive = 0
            self._persist()

    def handle_rate_limit_error(
        self,
        retry_after_seconds: float | None = None,
        tokens_remaining: float | None = None,
        tokens_needed: float = 1,
    ) -> RateLimitDecision:
        """Account for a throttle response and decide the wait.

        The local estimate was evidently wrong, so the level drops to the
        server-reported count (0 when unknown). The wait is the server's
        ``retry_after`` when given, otherwise the time to refill the
        deficit, plus per-consecutive escalation and jitter.
        """
        with self._lock:
            self._ensure_loaded()
            self._consecutive += 1
            self._throttled += 1
            level = 0.0 if tokens_remaining is None else float(tokens_remaining)
            self._tokens = max(0.0, min(self.capacity, level))
            self._last_update = self.clock()

            if retry_after_seconds is not None and retry_after_seconds > 0:
                wait = float(retry_after_seconds)
            else:
                wait = max(self._deficit_wait(tokens_needed), 1.0 / self.rate)
            if self.escalation_step > 0:
                wait += min((self._consecutive - 1) * self.escalation_step, self.escalation_cap)
            if self.jitter > 0:
                wait *= 1 + random.uniform(0, self.jitter)

            should_retry = self._consecutive <= self.max_inline_retries
            consecutive = self._consecutive
            self._persist()

        logger.warning(
            "bucket %s throttled (consecutive=%d) wait=%.1fs retry=%s",
            self.name, consecutive, wait, should_retry,
        )
        return RateLimitDecision(wait_seconds=wait, should_retry=should_retry)

    def record_wait(self, seconds: float) -> None:
        """Add an externally performed wait (e.g. a throttle sleep) to the metrics."""
        with self._lock:
            self._total_wait += seconds

    def record_success(self) -> None:
        """Reset the consecutive-throttle counter after a good response."""
        with self._lock:
            self._consecutive = 0

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._ensure_loaded()
            self._refill()
            return self._tokens

    def metrics(self) -> BucketMetrics:
        with self._lock:
            self._ensure_loaded()
            self._refill()
            return BucketMetrics(
                name=self.name,
                tokens=self._tokens,
                capacity=self.capacity,
                rate=self.rate,
                total_requests=self._total_requests,
                throttled_requests=self._throttled,
                total_wait_seconds=self._total_wait,
                consecutive_throttles=self._consecutive,
            )


class RateLimiterRegistry:
    """One bucket per endpoint class, created on first use.

    Example:
        >>> registry = RateLimiterRegistry({"sp_api": EndpointRateLimit(rate=5, capacity=20)})
        >>> registry.get("sp_api").capacity
        20.0
    """

    def __init__(
        self,
        limits: Mapping[str, EndpointRateLimit],
        *,
        state_store: BucketStateStore | None = None,
    ):
        self._limits = dict(limits)
        self._state_store = state_store
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        conn: sqlite3.Connection | None = None,
    ) -> RateLimiterRegistry:
        store = BucketStateStore(conn) if conn is not None else None
        return cls(settings.rate_limits, state_store=store)

    def get(self, name: str) -> TokenBucket:
        """Bucket for endpoint class ``name``.

        Raises:
            ConfigError: No limits are configured for ``name``.
        """
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                config = self._limits.get(name)
                if config is None:
                    raise ConfigError(
                        f"No rate limit configured for endpoint class {name!r}"
                    ).with_context(endpoint_class=name)
                bucket = TokenBucket.from_config(name, config, state_store=self._state_store)
                self._buckets[name] = bucket
            return bucket

    def config_for(self, name: str) -> EndpointRateLimit | None:
        return self._limits.get(name)

    def register(self, bucket: TokenBucket) -> None:
        """Install a pre-built bucket (tests, custom clocks)."""
        with self._lock:
            self._buckets[bucket.name] = bucket

    def names(self) -> list[str]:
        return sorted(set(self._limits) | set(self._buckets))

    def metrics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            buckets = list(self._buckets.values())
        return {b.name: b.metrics().to_dict() for b in buckets}


__all__ = [
    "BucketMetrics",
    "BucketStateStore",
    "RateLimitDecision",
    "RateLimiterRegistry",
    "TokenBucket",
]
