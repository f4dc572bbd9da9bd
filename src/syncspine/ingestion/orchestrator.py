"""Ingestion Orchestrator — one single-flight, multi-source cycle.

Manifesto:
    A cycle is lock → resolve → fetch (all sources at once) → persist →
    reconcile → classify → unlock. It runs on a timer and on demand, from
    any number of processes, and at most one runs at a time cluster-wide.

    - **Single-flight:** the named ``ingestion:cycle`` lock is tried, never
      waited on; a loser records a SKIPPED cycle and returns at once
    - **Frozen targets:** the target list is resolved once and stored on
      the cycle row before any fetch starts
    - **Isolated sources:** each source runs on its own thread with its own
      token bucket; a failing batch only loses that batch
    - **Observable gaps:** vanishing entities become CRITICAL DQ issues and
      make the cycle PARTIAL
    - **Held while running:** the lock is renewed every third of its TTL
      for as long as the cycle runs
    - **Always unlocks:** the lock is released in ``finally``

Architecture:
    ::

        run_cycle()
          │
          ├── ConcurrencyGuard.acquire("ingestion:cycle", owner=cycle_id)
          │       └── not acquired → record_skipped → CycleResult(SKIPPED)
          │
          ├── keep_alive: extend_lock every ttl/3 until the cycle ends
          ├── IngestionCycleStore.start(cycle_id)              RUNNING
          ├── TargetResolver.resolve(scope_id) → freeze_targets
          ├── ThreadPoolExecutor: SourceFetcher.fetch_all(targets)
          │       └── on_documents → RawPayloadStore.insert_many(cycle_id)
          ├── TransformStage.run(targets, cycle_id)
          ├── complete(SUCCEEDED | PARTIAL)      (FAILED on any abort)
          └── finally: ConcurrencyGuard.release

Tags:
    ingestion, single-flight, orchestration, syncspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import contextvars
import re
import sqlite3
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor

from syncspine.core.errors import IngestionCycleFailedError
from syncspine.core.logging import LogContext, get_logger
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.settings import SyncSettings
from syncspine.execution.concurrency import ConcurrencyGuard
from syncspine.execution.rate_limit import RateLimiterRegistry

from .cycles import IngestionCycleStore
from .dq_issues import DQIssueStore
from .models import CycleResult, CycleStatus, FetchedDocument, SourceFetchReport
from .raw_payloads import RawPayloadStore
from .sources import SourceClient, SourceFetcher
from .targets import TargetProvider, TargetResolver, TrackedEntityStore
from .transform import EntityTransformer, TransformStage

logger = get_logger(__name__)

CYCLE_LOCK_KEY = "ingestion:cycle"


class IngestionOrchestrator:
    """Runs ingestion cycles against a fixed set of sources."""

    def __init__(
        self,
        *,
        guard: ConcurrencyGuard,
        cycles: IngestionCycleStore,
        payloads: RawPayloadStore,
        resolver: TargetResolver,
        fetchers: Sequence[SourceFetcher],
        transform: TransformStage,
        scope_id: int = 1,
        strategy: str = "full_refresh",
        lock_ttl_seconds: float = 3600.0,
        lock_key: str = CYCLE_LOCK_KEY,
    ):
        self._guard = guard
        self._cycles = cycles
        self._payloads = payloads
        self._resolver = resolver
        self._fetchers = list(fetchers)
        self._transform = transform
        self.scope_id = scope_id
        self.strategy = strategy
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_key = lock_key

    @classmethod
    def from_settings(
        cls,
        conn: sqlite3.Connection,
        settings: SyncSettings,
        *,
        clients: Sequence[SourceClient],
        transformer: EntityTransformer,
        target_providers: Sequence[TargetProvider] = (),
        target_pattern: re.Pattern[str] | None = None,
        limiters: RateLimiterRegistry | None = None,
        schema: SchemaReport | None = None,
    ) -> IngestionOrchestrator:
        """Wire stores, buckets and fetchers from one connection and settings.

        The tracked-entity table is always the first target provider.
        """
        schema = schema or verify_schema(conn)
        limiters = limiters or RateLimiterRegistry.from_settings(settings, conn)
        payloads = RawPayloadStore(conn, schema=schema)
        return cls(
            guard=ConcurrencyGuard(conn, schema=schema),
            cycles=IngestionCycleStore(conn, schema=schema),
            payloads=payloads,
            resolver=TargetResolver(
                [TrackedEntityStore(conn, schema=schema), *target_providers],
                pattern=target_pattern,
            ),
            fetchers=[SourceFetcher.from_settings(c, settings, limiters) for c in clients],
            transform=TransformStage(payloads, DQIssueStore(conn, schema=schema), transformer),
            scope_id=settings.ingestion_scope_id,
            strategy=settings.ingestion_strategy,
            lock_ttl_seconds=settings.ingestion_lock_ttl_seconds,
        )

    @property
    def sources(self) -> list[str]:
        return [fetcher.name for fetcher in self._fetchers]

    # ------------------------------------------------------------------ #
    # Cycle
    # ------------------------------------------------------------------ #

    def run_cycle(self, *, should_stop: Callable[[], bool] | None = None) -> CycleResult:
        """Run one cycle, or return SKIPPED if another one holds the lock.

        Never raises for fetch, transform or bookkeeping failures: those end
        the cycle FAILED and are reported in the result.

        Args:
            should_stop: Polled between batches; True stops fetching early
                (the cycle still reconciles what arrived).
        """
        cycle_id = str(uuid.uuid4())
        started = time.monotonic()

        if not self._guard.acquire(self.lock_key, cycle_id, self.lock_ttl_seconds):
            holder = self._guard.get_lock_holder(self.lock_key)
            logger.info("ingestion.cycle_skipped", cycle_id=cycle_id, held_by=holder)
            self._cycles.record_skipped(
                cycle_id,
                strategy=self.strategy,
                scope_id=self.scope_id,
                reason=f"Another ingestion cycle is running ({holder or 'unknown'})",
            )
            return CycleResult(cycle_id=cycle_id, status=CycleStatus.SKIPPED,
                               reason="already_running")

        try:
            with (
                self._guard.keep_alive(self.lock_key, cycle_id, self.lock_ttl_seconds),
                LogContext(cycle_id=cycle_id),
            ):
                return self._run_locked(cycle_id, started, should_stop)
        finally:
            self._guard.release(self.lock_key, cycle_id)

    def _run_locked(
        self,
        cycle_id: str,
        started: float,
        should_stop: Callable[[], bool] | None,
    ) -> CycleResult:
        recorded = False
        targets: tuple[str, ...] = ()
        reports: list[SourceFetchReport] = []
        try:
            self._cycles.start(cycle_id, strategy=self.strategy, scope_id=self.scope_id)
            recorded = True
            logger.info("ingestion.cycle_started", strategy=self.strategy,
                        scope_id=self.scope_id, sources=self.sources)

            targets = self._resolver.resolve(self.scope_id)
            self._cycles.freeze_targets(cycle_id, targets)
            if not targets:
                logger.info("ingestion.no_targets")
                return self._finish(cycle_id, started, CycleStatus.SUCCEEDED, targets, reports)

            reports = self._fetch(cycle_id, targets, should_stop)
            summary = self._transform.run(targets, cycle_id, self.scope_id, sources=self.sources)
            status = CycleStatus.SUCCEEDED if summary.is_clean else CycleStatus.PARTIAL
            return self._finish(
                cycle_id, started, status, targets, reports,
                succeeded=summary.succeeded, failed=summary.failed, missing=summary.missing,
            )
        except Exception as exc:
            logger.exception("ingestion.cycle_failed", error=str(exc))
            if recorded:
                try:
                    return self._finish(
                        cycle_id, started, CycleStatus.FAILED, targets, reports,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                except Exception as record_exc:
                    logger.error("ingestion.cycle_record_failed", error=str(record_exc))
            return CycleResult(
                cycle_id=cycle_id,
                status=CycleStatus.FAILED,
                target_count=len(targets),
                source_reports=reports,
                duration_ms=_elapsed_ms(started),
                error=f"{type(exc).__name__}: {exc}",
            )

    def _fetch(
        self,
        cycle_id: str,
        targets: Sequence[str],
        should_stop: Callable[[], bool] | None,
    ) -> list[SourceFetchReport]:
        """Fetch all sources concurrently; raises if any source aborted."""

        def persist(documents: list[FetchedDocument]) -> None:
            self._payloads.insert_many(documents, scope_id=self.scope_id, cycle_id=cycle_id)

        if not self._fetchers:
            logger.warning("ingestion.no_sources")
            return []

        with ThreadPoolExecutor(
            max_workers=len(self._fetchers), thread_name_prefix=f"fetch-{cycle_id[:8]}"
        ) as pool:
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    fetcher.fetch_all,
                    targets,
                    on_documents=persist,
                    should_stop=should_stop,
                )
                for fetcher in self._fetchers
            ]

        reports: list[SourceFetchReport] = []
        failures: list[tuple[str, BaseException]] = []
        for fetcher, future in zip(self._fetchers, futures, strict=True):
            error = future.exception()
            if error is None:
                reports.append(future.result())
            else:
                failures.append((fetcher.name, error))
                reports.append(SourceFetchReport(source=fetcher.name, requested=len(targets),
                                                 errors=[str(error)]))
        if failures:
            name, first = failures[0]
            raise IngestionCycleFailedError(
                f"Source {name} aborted: {first}",
                cause=first if isinstance(first, Exception) else None,
            ).with_context(cycle_id=cycle_id, source_name=name)
        return reports

    def _finish(
        self,
        cycle_id: str,
        started: float,
        status: CycleStatus,
        targets: Sequence[str],
        reports: list[SourceFetchReport],
        *,
        succeeded: int = 0,
        failed: int = 0,
        missing: Sequence[str] = (),
        error: str | None = None,
    ) -> CycleResult:
        result = CycleResult(
            cycle_id=cycle_id,
            status=status,
            target_count=len(targets),
            succeeded=succeeded,
            failed=failed,
            missing=list(missing),
            source_reports=reports,
            duration_ms=_elapsed_ms(started),
            error=error,
        )
        self._cycles.complete(
            cycle_id,
            status,
            succeeded=succeeded,
            failed=failed,
            missing=missing,
            source_reports=[r.to_dict() for r in reports],
            error=error,
        )
        log = logger.warning if status is not CycleStatus.SUCCEEDED else logger.info
        log(
            "ingestion.cycle_completed",
            status=status.value,
            targets=len(targets),
            succeeded=succeeded,
            failed=failed,
            missing=len(missing),
            duration_ms=result.duration_ms,
        )
        return result


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


__all__ = ["CYCLE_LOCK_KEY", "IngestionOrchestrator"]
