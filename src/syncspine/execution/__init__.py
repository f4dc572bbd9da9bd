"""Job execution: durable queue, worker, retries, throttling and locks.

Quick start::

    from syncspine.core.connection import connect, initialize
    from syncspine.execution import (
        DeadLetterQueue, HandlerRegistry, JobRequest, JobStore, JobType, WorkerController,
    )

    conn = connect("sync.db")
    initialize(conn)
    store = JobStore(conn)
    store.create(JobRequest(job_type=JobType.REFRESH_MATERIALIZED_VIEWS))

    worker = WorkerController(store, registry, dlq=DeadLetterQueue(conn))
    worker.start()
"""

from syncspine.execution.concurrency import ConcurrencyGuard
from syncspine.execution.context import JobContext
from syncspine.execution.dlq import DeadLetterQueue
from syncspine.execution.job_store import JobStore, ReclaimedJob
from syncspine.execution.models import (
    GLOBAL_SCOPE,
    PUBLISH_JOB_TYPES,
    DeadLetter,
    InvalidTransitionError,
    Job,
    JobError,
    JobLogEntry,
    JobRequest,
    JobScope,
    JobStatus,
    JobType,
    PartialResult,
    ScopeType,
    make_dedup_key,
    validate_job_transition,
)
from syncspine.execution.rate_limit import (
    BucketMetrics,
    BucketStateStore,
    RateLimitDecision,
    RateLimiterRegistry,
    TokenBucket,
)
from syncspine.execution.registry import HandlerRegistry, JobHandler
from syncspine.execution.retry import (
    DecorrelatedJitterBackoff,
    RetryLoop,
    RetryStrategy,
    classify_failure,
)
from syncspine.execution.timeout import Deadline, JobTimeouts, poll_until, run_with_timeout
from syncspine.execution.worker import WorkerController, WorkerStats

__all__ = [
    # models
    "GLOBAL_SCOPE",
    "PUBLISH_JOB_TYPES",
    "DeadLetter",
    "InvalidTransitionError",
    "Job",
    "JobError",
    "JobLogEntry",
    "JobRequest",
    "JobScope",
    "JobStatus",
    "JobType",
    "PartialResult",
    "ScopeType",
    "make_dedup_key",
    "validate_job_transition",
    # queue
    "JobStore",
    "ReclaimedJob",
    "DeadLetterQueue",
    # worker
    "HandlerRegistry",
    "JobContext",
    "JobHandler",
    "WorkerController",
    "WorkerStats",
    "Deadline",
    "JobTimeouts",
    "poll_until",
    "run_with_timeout",
    # resilience
    "DecorrelatedJitterBackoff",
    "RetryLoop",
    "RetryStrategy",
    "classify_failure",
    "BucketMetrics",
    "BucketStateStore",
    "RateLimitDecision",
    "RateLimiterRegistry",
    "TokenBucket",
    "ConcurrencyGuard",
]
