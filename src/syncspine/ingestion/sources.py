"""Source fetching — batched, rate-limited, retried per batch.

WHY
───
Each external source is reached through a client (an external
collaborator) that knows the vendor API. Everything around the call is
the same for every source and lives here: split the targets into
batches, charge the source's token bucket before each call, retry
throttled and network-failed batches with bounded waits, and keep going
when a batch finally fails. One bad batch never aborts the other batches
of the same source, let alone other sources.

ARCHITECTURE
────────────
::

    SourceFetcher(client, bucket)
      └── .fetch_all(ids, on_documents)
            │
            for batch in chunked(ids, batch_size):
            │     .fetch_batch(batch) ── RetryLoop.run(step)
            │            step:
            │              bucket.wait_for_tokens(cost); bucket.acquire(cost)
            │              client.fetch_batch(batch)   (bounded by request_timeout)
            │                ├── page             → update_from_headers → Ok(docs)
            │                ├── RateLimitedError → handle_rate_limit_error → Retry | Fatal
            │                └── other error      → classify_failure → Retry | Fatal
            │     Ok  → on_documents(docs)
            │     Err → report.failed_batches += 1, continue
            └── sleep(batch_delay) between batches

Related modules:
    execution/rate_limit.py — token buckets
    execution/retry.py      — RetryLoop, DecorrelatedJitterBackoff
    orchestrator.py         — runs one fetcher per source concurrently

Tags:
    syncspine, ingestion, source, rate-limit, retry

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from syncspine.core.errors import ConfigError, RateLimitedError
from syncspine.core.logging import get_logger
from syncspine.core.result import Fatal, Ok, Outcome, Result, Retry
from syncspine.core.settings import SyncSettings
from syncspine.core.timestamps import utc_now
from syncspine.execution.rate_limit import RateLimiterRegistry, TokenBucket
from syncspine.execution.retry import DecorrelatedJitterBackoff, RetryLoop, classify_failure
from syncspine.execution.timeout import run_with_timeout

from .identifiers import chunked
from .models import FetchedDocument, SourceFetchReport

logger = get_logger(__name__)


@dataclass(frozen=True)
class SourcePage:
    """What a client returns for one batch.

    Attributes:
        documents: Entity id -> payload, for the entities the source had data for
        tokens_remaining: Server-reported quota after the call, when the source reports one
    """

    documents: Mapping[str, dict[str, Any]] = field(default_factory=dict)
    tokens_remaining: float | None = None


@runtime_checkable
class SourceClient(Protocol):
    """One external data source.

    ``fetch_batch`` pages internally and returns the documents it found.
    It raises :class:`RateLimitedError` for throttle responses and
    :class:`ExternalApiError` (or any exception) for other failures.
    """

    name: str

    def fetch_batch(self, ids: Sequence[str]) -> SourcePage | Mapping[str, dict[str, Any]]: ...


class SourceFetcher:
    """Drives one :class:`SourceClient` over a target list."""

    def __init__(
        self,
        client: SourceClient,
        bucket: TokenBucket,
        *,
        batch_size: int = 10,
        batch_delay: float = 0.5,
        request_timeout: float | None = 30.0,
        max_network_retries: int = 3,
        backoff: DecorrelatedJitterBackoff | None = None,
        tokens_per_request: float = 1.0,
        tokens_per_id: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            client: The source to call.
            bucket: Token bucket of the source's endpoint class.
            batch_size: Identifiers per call.
            batch_delay: Pause between consecutive batches, seconds.
            request_timeout: Ceiling for one client call, seconds (None: unbounded).
                A call that exceeds it counts as a network failure.
            max_network_retries: Retries per batch for non-throttle failures.
            backoff: Delay policy for those retries (default: 1 s base, 30 s cap).
            tokens_per_request: Fixed token cost of a call.
            tokens_per_id: Extra token cost per identifier in the call.

        Raises:
            ConfigError: A full batch would cost more than the bucket can ever hold.
        """
        if batch_size < 1:
            raise ConfigError(f"Batch size for {client.name} must be positive")
        if request_timeout is not None and request_timeout <= 0:
            raise ConfigError(f"Request timeout for {client.name} must be positive")
        self.client = client
        self.bucket = bucket
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.request_timeout = request_timeout
        self.max_network_retries = max_network_retries
        self.backoff = backoff or DecorrelatedJitterBackoff(
            max_attempts=max_network_retries + 1, base_delay=1.0, max_delay=30.0
        )
        self.tokens_per_request = tokens_per_request
        self.tokens_per_id = tokens_per_id
        self._sleep = sleep
        self._clock = clock

        if self.cost(batch_size) > bucket.capacity:
            raise ConfigError(
                f"A batch of {batch_size} for {client.name} costs {self.cost(batch_size)} "
                f"tokens but bucket {bucket.name!r} holds at most {bucket.capacity}"
            )

    @classmethod
    def from_settings(
        cls,
        client: SourceClient,
        settings: SyncSettings,
        limiters: RateLimiterRegistry,
        **kwargs: Any,
    ) -> SourceFetcher:
        """Build a fetcher whose bucket and costs come from ``settings.rate_limits[client.name]``."""
        bucket = limiters.get(client.name)
        config = limiters.config_for(client.name)
        return cls(
            client,
            bucket,
            batch_size=settings.batch_size_for(client.name),
            batch_delay=settings.source_batch_delay_seconds,
            request_timeout=settings.source_request_timeout_seconds,
            max_network_retries=settings.source_max_network_retries,
            backoff=DecorrelatedJitterBackoff(
                max_attempts=settings.source_max_network_retries + 1,
                base_delay=settings.source_retry_base_delay_seconds,
                max_delay=settings.source_retry_max_delay_seconds,
            ),
            tokens_per_request=config.tokens_per_request if config else 1.0,
            tokens_per_id=config.tokens_per_id if config else 0.0,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return self.client.name

    def cost(self, batch_len: int) -> float:
        return self.tokens_per_request + self.tokens_per_id * batch_len

    def _call(self, ids: list[str]) -> SourcePage | Mapping[str, dict[str, Any]]:
        if self.request_timeout is None:
            return self.client.fetch_batch(ids)
        return run_with_timeout(
            self.client.fetch_batch,
            self.request_timeout,
            operation=f"{self.name}.fetch_batch",
            args=(ids,),
        )

    # ------------------------------------------------------------------ #
    # Fetching
    # ------------------------------------------------------------------ #

    def fetch_batch(
        self,
        ids: Sequence[str],
        report: SourceFetchReport | None = None,
    ) -> Result[list[FetchedDocument]]:
        """Fetch one batch, retrying throttles and transient failures.

        Never raises for source errors; the final failure comes back as ``Err``.
        """
        report = report if report is not None else SourceFetchReport(source=self.name)
        cost = self.cost(len(ids))
        wanted = set(ids)
        network_failures = 0
        previous_delay: float | None = None

        def step(attempt: int) -> Outcome[list[FetchedDocument]]:
            nonlocal network_failures, previous_delay
            if cost > 0:
                report.rate_limit_wait_seconds += self.bucket.wait_for_tokens(cost)
                self.bucket.acquire(cost, block=True)
            try:
                response = self._call(list(ids))
            except RateLimitedError as exc:
                report.throttled += 1
                decision = self.bucket.handle_rate_limit_error(
                    exc.retry_after, exc.tokens_remaining, tokens_needed=cost
                )
                if not decision.should_retry:
                    logger.warning("source.throttle_retries_exhausted", source=self.name,
                                   batch_size=len(ids))
                    return Fatal(exc)
                report.rate_limit_wait_seconds += decision.wait_seconds
                self.bucket.record_wait(decision.wait_seconds)
                return Retry(wait_for=decision.wait_seconds, error=exc)
            except Exception as exc:
                network_failures += 1
                outcome = classify_failure(exc, self.backoff, network_failures, previous_delay)
                if isinstance(outcome, Retry):
                    previous_delay = outcome.wait_for
                logger.warning(
                    "source.batch_error",
                    source=self.name,
                    attempt=attempt,
                    error=str(exc),
                    retrying=isinstance(outcome, Retry),
                )
                return outcome

            page = response if isinstance(response, SourcePage) else SourcePage(dict(response))
            self.bucket.update_from_headers(page.tokens_remaining)
            self.bucket.record_success()
            captured_at = self._clock()
            documents = []
            for entity_id, payload in page.documents.items():
                if entity_id not in wanted:
                    logger.debug("source.unrequested_document", source=self.name, entity_id=entity_id)
                    continue
                documents.append(FetchedDocument(entity_id, self.name, payload, captured_at))
            return Ok(documents)

        # Hard ceiling: every throttle retry plus every network retry plus the first try.
        loop = RetryLoop(
            max_attempts=self.bucket.max_inline_retries + self.max_network_retries + 1,
            sleep=self._sleep,
        )
        return loop.run(step)

    def fetch_all(
        self,
        ids: Sequence[str],
        *,
        on_documents: Callable[[list[FetchedDocument]], Any] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> SourceFetchReport:
        """Fetch every id in batches; failed batches are recorded, not raised.

        ``on_documents`` receives each successful batch's documents as soon
        as it arrives (the orchestrator persists them there). Exceptions from
        it propagate: losing fetched data aborts the cycle.
        """
        report = SourceFetchReport(source=self.name, requested=len(ids))
        batches = list(chunked(ids, self.batch_size))
        logger.info("source.fetch_started", source=self.name, ids=len(ids), batches=len(batches))

        for index, batch in enumerate(batches):
            if should_stop is not None and should_stop():
                logger.warning("source.fetch_stopped", source=self.name, remaining=len(batches) - index)
                break
            if index > 0 and self.batch_delay > 0:
                self._sleep(self.batch_delay)

            report.batches += 1
            result = self.fetch_batch(batch, report)
            if isinstance(result, Ok):
                documents = result.value
                report.fetched += len(documents)
                if documents and on_documents is not None:
                    on_documents(documents)
            else:
                report.failed_batches += 1
                report.errors.append(f"batch {index + 1}: {result.error}")
                logger.error(
                    "source.batch_failed",
                    source=self.name,
                    batch=index + 1,
                    ids=list(batch),
                    error=str(result.error),
                )

        logger.info("source.fetch_completed", **report.to_dict())
        return report


__all__ = ["SourceClient", "SourceFetcher", "SourcePage"]
