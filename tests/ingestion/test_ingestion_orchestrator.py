"""Tests for IngestionOrchestrator, IngestionScheduler and the cycle job handler."""

from __future__ import annotations

import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from syncspine.core.connection import connect
from syncspine.core.errors import IngestionCycleFailedError
from syncspine.execution import (
    ConcurrencyGuard,
    JobContext,
    JobRequest,
    JobType,
    PartialResult,
    TokenBucket,
)
from syncspine.ingestion import (
    CYCLE_LOCK_KEY,
    CycleResult,
    CycleStatus,
    DQIssueStore,
    IngestionCycleHandler,
    IngestionCycleStore,
    IngestionOrchestrator,
    IngestionScheduler,
    RawPayloadStore,
    SourceFetcher,
    TargetResolver,
    TransformStage,
)


class StaticClient:
    def __init__(self, name: str, have: set[str]):
        self.name = name
        self.have = have

    def fetch_batch(self, ids):
        return {i: {"source": self.name, "id": i} for i in ids if i in self.have}


class SlowClient(StaticClient):
    def __init__(self, name: str, have: set[str], delay: float):
        super().__init__(name, have)
        self.delay = delay

    def fetch_batch(self, ids):
        time.sleep(self.delay)
        return super().fetch_batch(ids)


class UnreliableCycleStore(IngestionCycleStore):
    """Fails the first ``failures`` completions it is asked to record."""

    def __init__(self, conn, failures: int):
        super().__init__(conn)
        self.failures = failures

    def complete(self, cycle_id, status, **kwargs):
        if self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("disk I/O error")
        return super().complete(cycle_id, status, **kwargs)


class AcceptAll:
    def __init__(self) -> None:
        self.entities: list[str] = []

    def transform(self, entity_id, scope_id, cycle_id, payloads_by_source):
        self.entities.append(entity_id)
        return True


@pytest.fixture()
def second_conn(file_conn, db_path):
    """Another connection to the database behind ``file_conn``."""
    db = connect(db_path)
    yield db
    db.close()


def _orchestrator(conn, clients, targets, transformer=None, *, cycles=None,
                  **kwargs) -> IngestionOrchestrator:
    payloads = RawPayloadStore(conn)
    fetchers = [
        SourceFetcher(c, TokenBucket(rate=100.0, capacity=100.0, name=c.name, jitter=0.0),
                      batch_size=5, batch_delay=0.0)
        for c in clients
    ]
    return IngestionOrchestrator(
        guard=ConcurrencyGuard(conn),
        cycles=cycles if cycles is not None else IngestionCycleStore(conn),
        payloads=payloads,
        resolver=TargetResolver([lambda scope_id: list(targets)]),
        fetchers=fetchers,
        transform=TransformStage(payloads, DQIssueStore(conn), transformer or AcceptAll()),
        scope_id=1,
        **kwargs,
    )


# ── Cycles ───────────────────────────────────────────────────────────────


class TestRunCycle:
    def test_all_sources_deliver(self, conn):
        transformer = AcceptAll()
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1", "B2"}),
                                    StaticClient("sp_api", {"A1"})], ["A1", "B2"], transformer)
        result = orch.run_cycle()

        assert result.status is CycleStatus.SUCCEEDED
        assert result.succeeded == 2
        assert sorted(transformer.entities) == ["A1", "B2"]
        assert {r.source for r in result.source_reports} == {"keepa", "sp_api"}
        assert RawPayloadStore(conn).count_for_cycle(result.cycle_id) == 3

    def test_vanished_entity_makes_cycle_partial(self, conn):
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1", "B2"])
        result = orch.run_cycle()

        assert result.status is CycleStatus.PARTIAL
        assert result.missing == ["B2"]
        row = IngestionCycleStore(conn).require(result.cycle_id)
        assert row.status is CycleStatus.PARTIAL
        assert row.targets == ["A1", "B2"]
        assert row.missing == ["B2"]
        (issue,) = DQIssueStore(conn).list_for_cycle(result.cycle_id)
        assert issue.entity_id == "B2"

    def test_no_targets_succeeds_without_fetching(self, conn):
        result = _orchestrator(conn, [StaticClient("keepa", set())], []).run_cycle()
        assert result.status is CycleStatus.SUCCEEDED
        assert result.target_count == 0
        assert result.source_reports == []

    def test_lock_released_after_cycle(self, conn):
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1"])
        orch.run_cycle()
        assert not ConcurrencyGuard(conn).is_locked(CYCLE_LOCK_KEY)
        assert orch.run_cycle().status is CycleStatus.SUCCEEDED

    def test_persistence_failure_fails_cycle(self, conn):
        conn.execute("DROP TABLE raw_payloads")
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1"])
        result = orch.run_cycle()

        assert result.status is CycleStatus.FAILED
        assert "keepa" in result.error
        assert IngestionCycleStore(conn).require(result.cycle_id).status is CycleStatus.FAILED
        assert not ConcurrencyGuard(conn).is_locked(CYCLE_LOCK_KEY)

    def test_completion_write_failure_records_failed(self, conn):
        cycles = UnreliableCycleStore(conn, failures=1)
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1"], cycles=cycles)
        result = orch.run_cycle()

        assert result.status is CycleStatus.FAILED
        assert "disk I/O error" in result.error
        assert cycles.require(result.cycle_id).status is CycleStatus.FAILED
        assert not ConcurrencyGuard(conn).is_locked(CYCLE_LOCK_KEY)

    def test_unrecordable_cycle_still_returns(self, conn):
        cycles = UnreliableCycleStore(conn, failures=2)
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1"], cycles=cycles)
        result = orch.run_cycle()

        assert result.status is CycleStatus.FAILED
        assert [r.source for r in result.source_reports] == ["keepa"]
        assert not ConcurrencyGuard(conn).is_locked(CYCLE_LOCK_KEY)


class TestSingleFlight:
    def test_concurrent_cycle_is_skipped(self, conn):
        guard = ConcurrencyGuard(conn)
        assert guard.acquire(CYCLE_LOCK_KEY, "other-cycle", 60)
        orch = _orchestrator(conn, [StaticClient("keepa", {"A1"})], ["A1"])

        result = orch.run_cycle()

        assert result.status is CycleStatus.SKIPPED
        assert result.reason == "already_running"
        row = IngestionCycleStore(conn).require(result.cycle_id)
        assert row.status is CycleStatus.SKIPPED
        assert "other-cycle" in row.error
        assert guard.get_lock_holder(CYCLE_LOCK_KEY) == "other-cycle"

    @pytest.mark.slow
    @pytest.mark.integration
    def test_overlapping_cycles_run_once(self, file_conn, second_conn):
        orchestrators = [
            _orchestrator(c, [SlowClient("keepa", {"A1"}, delay=0.5)], ["A1"])
            for c in (file_conn, second_conn)
        ]
        barrier = threading.Barrier(2)

        def run(orch):
            barrier.wait()
            return orch.run_cycle()

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(run, orchestrators))

        assert sorted(r.status.value for r in results) == ["SKIPPED", "SUCCEEDED"]
        cycles = IngestionCycleStore(file_conn)
        assert {cycles.require(r.cycle_id).status for r in results} == {
            CycleStatus.SUCCEEDED, CycleStatus.SKIPPED,
        }

    @pytest.mark.slow
    @pytest.mark.integration
    def test_lock_held_past_its_ttl(self, file_conn, second_conn):
        ttl = 0.6
        first = _orchestrator(file_conn, [SlowClient("keepa", {"A1"}, delay=2.0)], ["A1"],
                              lock_ttl_seconds=ttl)
        second = _orchestrator(second_conn, [StaticClient("keepa", {"A1"})], ["A1"],
                               lock_ttl_seconds=ttl)

        with ThreadPoolExecutor(max_workers=1) as pool:
            long_cycle = pool.submit(first.run_cycle)
            time.sleep(ttl * 2)
            late = second.run_cycle()
            finished = long_cycle.result(timeout=10)

        assert late.status is CycleStatus.SKIPPED
        assert finished.status is CycleStatus.SUCCEEDED
        assert not ConcurrencyGuard(file_conn).is_locked(CYCLE_LOCK_KEY)


# ── Scheduler ────────────────────────────────────────────────────────────


class CountingOrchestrator:
    def __init__(self) -> None:
        self.calls = 0

    def run_cycle(self, *, should_stop=None):
        self.calls += 1
        return CycleResult(cycle_id=f"c{self.calls}", status=CycleStatus.SUCCEEDED)


class TestScheduler:
    def test_tick_records_result(self):
        scheduler = IngestionScheduler(CountingOrchestrator(), interval_seconds=60)
        result = scheduler.tick()
        assert result.cycle_id == "c1"
        assert scheduler.runs == 1
        assert scheduler.last_result is result

    def test_tick_survives_errors(self):
        class Broken:
            def run_cycle(self, *, should_stop=None):
                raise RuntimeError("db gone")

        scheduler = IngestionScheduler(Broken(), interval_seconds=60)
        assert scheduler.tick() is None
        assert scheduler.runs == 0

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            IngestionScheduler(CountingOrchestrator(), interval_seconds=0)

    @pytest.mark.slow
    def test_background_start_stop(self):
        orch = CountingOrchestrator()
        scheduler = IngestionScheduler(orch, interval_seconds=0.05)
        scheduler.start()
        with pytest.raises(RuntimeError):
            scheduler.start()
        deadline = time.monotonic() + 5
        while orch.calls < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.stop(timeout=5)
        assert not scheduler.is_running()
        assert orch.calls >= 2


# ── Job handler ──────────────────────────────────────────────────────────


class FixedOrchestrator:
    def __init__(self, result: CycleResult):
        self.result = result

    def run_cycle(self, *, should_stop=None):
        return self.result


@pytest.fixture()
def job_ctx(job_store):
    job = job_store.create(JobRequest(job_type=JobType.RUN_INGESTION_CYCLE))
    return JobContext(job=job, worker_id="w-test", timeout_seconds=60, store=job_store)


class TestIngestionCycleHandler:
    def test_success_returns_summary(self, job_ctx):
        handler = IngestionCycleHandler(FixedOrchestrator(CycleResult("c1", CycleStatus.SUCCEEDED)))
        assert handler(job_ctx)["status"] == "SUCCEEDED"

    def test_skipped_is_success(self, job_ctx):
        handler = IngestionCycleHandler(
            FixedOrchestrator(CycleResult("c1", CycleStatus.SKIPPED, reason="already_running"))
        )
        assert handler(job_ctx)["reason"] == "already_running"

    def test_partial_maps_to_partial_result(self, job_ctx):
        handler = IngestionCycleHandler(
            FixedOrchestrator(CycleResult("c1", CycleStatus.PARTIAL, missing=["B2"]))
        )
        result = handler(job_ctx)
        assert isinstance(result, PartialResult)
        assert result.value["missing"] == ["B2"]

    def test_failed_raises(self, job_ctx, job_store):
        handler = IngestionCycleHandler(
            FixedOrchestrator(CycleResult("c1", CycleStatus.FAILED, error="keepa aborted"))
        )
        with pytest.raises(IngestionCycleFailedError):
            handler(job_ctx)
        assert job_store.get_logs(job_ctx.job.id)[0].data["status"] == "FAILED"
