"""Runtime settings for syncspine.

All tunables of the worker, the rate limiters and the ingestion pipeline
live on one ``SyncSettings`` object read from ``SYNCSPINE_*`` environment
variables (and an optional ``.env`` file).

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** ``SYNCSPINE_WORKER_BATCH_SIZE=10``
    - **Nested values:** ``SYNCSPINE_RATE_LIMITS__KEEPA__RATE=0.5``
    - **Sensible defaults:** The values the production system shipped with

Examples:
    >>> from syncspine.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.timeout_for("SYNC_KEEPA_ASIN")
    120.0

Tags:
    settings, configuration, pydantic, environment, syncspine

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Seconds. Keys are JobType values.
DEFAULT_JOB_TIMEOUTS: dict[str, float] = {
    "PUBLISH_PRICE_CHANGE": 60.0,
    "PUBLISH_STOCK_CHANGE": 60.0,
    "SYNC_KEEPA_ASIN": 120.0,
    "COMPUTE_FEATURES_LISTING": 30.0,
    "COMPUTE_FEATURES_ASIN": 30.0,
    "SYNC_AMAZON_OFFER": 300.0,
    "SYNC_AMAZON_SALES": 300.0,
    "SYNC_AMAZON_CATALOG": 300.0,
    "GENERATE_RECOMMENDATIONS_LISTING": 60.0,
    "GENERATE_RECOMMENDATIONS_ASIN": 60.0,
    "REFRESH_MATERIALIZED_VIEWS": 600.0,
    "RUN_INGESTION_CYCLE": 1800.0,
}


class EndpointRateLimit(BaseModel):
    """Token-bucket parameters for one external endpoint class.

    Fields
    ──────
    rate               : Steady-state refill, tokens per second
    capacity           : Maximum tokens (burst size)
    initial_tokens     : Tokens at process start (None = full bucket)
    max_inline_retries : Consecutive throttle responses tolerated per batch
    jitter             : Fractional jitter added to throttle waits
    tokens_per_request : Fixed cost of one call
    tokens_per_id      : Additional cost per identifier in the call
    escalation_seconds : Extra wait added per consecutive throttle response
    escalation_cap_seconds : Ceiling on that extra wait
    """

    rate: float = Field(gt=0)
    capacity: float = Field(gt=0)
    initial_tokens: float | None = None
    max_inline_retries: int = 3
    jitter: float = 0.1
    tokens_per_request: float = 1.0
    tokens_per_id: float = 0.0
    escalation_seconds: float = 0.0
    escalation_cap_seconds: float = 0.0


def _default_rate_limits() -> dict[str, EndpointRateLimit]:
    return {
        # 20 tokens per minute, charged per ASIN; a fresh process starts empty.
        "keepa": EndpointRateLimit(
            rate=20 / 60,
            capacity=20,
            initial_tokens=0,
            max_inline_retries=3,
            jitter=0.03,
            tokens_per_request=0,
            tokens_per_id=1,
            escalation_seconds=30,
            escalation_cap_seconds=60,
        ),
        "sp_api": EndpointRateLimit(
            rate=5.0,
            capacity=20,
            initial_tokens=10,
            max_inline_retries=5,
            jitter=0.1,
            tokens_per_request=1,
        ),
    }


class SyncSettings(BaseSettings):
    """Settings for the job worker and the ingestion pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="SYNCSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_path: str = Field(
        default_factory=lambda: str(Path.home() / ".syncspine" / "syncspine.db"),
        description="SQLite database file (':memory:' for ephemeral)",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Worker ───────────────────────────────────────────────────
    worker_poll_interval_seconds: float = 5.0
    worker_batch_size: int = 5
    worker_shutdown_timeout_seconds: float = 30.0
    worker_lease_margin_seconds: float = 60.0

    # ── Jobs ─────────────────────────────────────────────────────
    job_default_timeout_seconds: float = 300.0
    job_timeouts: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_JOB_TIMEOUTS))
    job_default_max_attempts: int = 3
    job_default_priority: int = 5
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 3600.0

    # ── Ingestion ────────────────────────────────────────────────
    ingestion_interval_seconds: float = 1800.0
    ingestion_scope_id: int = 1
    ingestion_lock_ttl_seconds: float = 3600.0
    ingestion_strategy: str = "full_refresh"

    # ── Sources ──────────────────────────────────────────────────
    source_batch_sizes: dict[str, int] = Field(
        default_factory=lambda: {"keepa": 10, "sp_api": 20}
    )
    source_default_batch_size: int = 10
    source_request_timeout_seconds: float = 30.0
    source_batch_delay_seconds: float = 0.5
    source_max_network_retries: int = 3
    source_retry_base_delay_seconds: float = 1.0
    source_retry_max_delay_seconds: float = 30.0
    rate_limits: dict[str, EndpointRateLimit] = Field(default_factory=_default_rate_limits)

    # ── Long-running external operations ─────────────────────────
    long_running_timeout_seconds: float = 1800.0
    long_running_poll_interval_seconds: float = 15.0

    def timeout_for(self, job_type: str) -> float:
        """Per-type job timeout in seconds."""
        return float(self.job_timeouts.get(str(job_type), self.job_default_timeout_seconds))

    def batch_size_for(self, source: str) -> int:
        return self.source_batch_sizes.get(source, self.source_default_batch_size)


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    """Process-wide settings, read once."""
    return SyncSettings()


def clear_settings_cache() -> None:
    """Forget cached settings (tests, config reload)."""
    get_settings.cache_clear()


__all__ = [
    "DEFAULT_JOB_TIMEOUTS",
    "EndpointRateLimit",
    "SyncSettings",
    "get_settings",
    "clear_settings_cache",
]
