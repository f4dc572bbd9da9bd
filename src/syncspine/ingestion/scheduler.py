"""Interval scheduler for ingestion cycles.

Each process may run its own scheduler; the orchestrator's single-flight
lock makes overlapping ticks from several processes harmless (all but one
come back SKIPPED). Like the job worker, the scheduler is an explicit
object with ``start`` / ``stop`` / ``is_running`` and no module state.
"""

from __future__ import annotations

import threading

from syncspine.core.logging import get_logger

from .models import CycleResult
from .orchestrator import IngestionOrchestrator

logger = get_logger(__name__)


class IngestionScheduler:
    """Runs ``orchestrator.run_cycle()`` every ``interval_seconds``."""

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        *,
        interval_seconds: float = 1800.0,
        run_immediately: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        self._orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.last_result: CycleResult | None = None

    def start(self) -> None:
        """Start ticking on a background thread.

        Raises:
            RuntimeError: Already running.
        """
        if self.is_running():
            raise RuntimeError("Ingestion scheduler is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="ingestion-scheduler",
                                        daemon=True)
        self._thread.start()

    def run_forever(self) -> None:
        """Tick on the current thread until :meth:`stop`."""
        logger.info("ingestion.scheduler_started", interval_seconds=self.interval_seconds,
                    run_immediately=self.run_immediately)
        if not self.run_immediately:
            self._stop_event.wait(self.interval_seconds)
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.interval_seconds)
        logger.info("ingestion.scheduler_stopped", runs=self.runs)

    def tick(self) -> CycleResult | None:
        """Run one cycle now. Errors are logged; the schedule keeps going."""
        try:
            result = self._orchestrator.run_cycle(should_stop=self._stop_event.is_set)
        except Exception:
            logger.exception("ingestion.scheduled_cycle_error")
            return None
        self.runs += 1
        self.last_result = result
        return result

    def stop(self, timeout: float | None = None) -> bool:
        """Stop ticking; waits for a cycle in flight up to ``timeout``."""
        self._stop_event.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        if thread.is_alive():
            return False
        self._thread = None
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["IngestionScheduler"]
