"""Job handler for ``RUN_INGESTION_CYCLE``.

Lets an ingestion cycle be queued like any other job (manual triggers,
catch-up runs). The cycle outcome maps onto the job outcome:

    SUCCEEDED, SKIPPED → success (a skipped run is not an error: another
                         cycle was already doing the work)
    PARTIAL            → PartialResult
    FAILED             → IngestionCycleFailedError (retryable)
"""

from __future__ import annotations

from typing import Any

from syncspine.core.errors import IngestionCycleFailedError
from syncspine.execution.context import JobContext
from syncspine.execution.models import PartialResult

from .models import CycleStatus
from .orchestrator import IngestionOrchestrator


class IngestionCycleHandler:
    """Callable handler wrapping an orchestrator."""

    def __init__(self, orchestrator: IngestionOrchestrator):
        self._orchestrator = orchestrator

    def __call__(self, ctx: JobContext) -> Any:
        result = self._orchestrator.run_cycle(should_stop=ctx.is_cancelled)
        ctx.log(f"ingestion cycle {result.cycle_id} {result.status.value}",
                cycle_id=result.cycle_id, status=result.status.value)
        payload = result.to_dict()
        if result.status is CycleStatus.FAILED:
            raise IngestionCycleFailedError(
                result.error or f"Ingestion cycle {result.cycle_id} failed"
            ).with_context(cycle_id=result.cycle_id, job_id=ctx.job.id)
        if result.status is CycleStatus.PARTIAL:
            return PartialResult(payload)
        return payload


__all__ = ["IngestionCycleHandler"]
