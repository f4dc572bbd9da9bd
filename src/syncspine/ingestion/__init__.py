"""Ingestion pipeline: single-flight, rate-limited, multi-source cycles.

Quick start::

    from syncspine.core.connection import connect, initialize
    from syncspine.core.settings import get_settings
    from syncspine.ingestion import IngestionOrchestrator

    conn = connect("sync.db")
    initialize(conn)
    orchestrator = IngestionOrchestrator.from_settings(
        conn, get_settings(), clients=[keepa_client, sp_api_client], transformer=transformer,
    )
    result = orchestrator.run_cycle()
    print(result.status, result.missing)
"""

from syncspine.ingestion.cycles import IngestionCycleStore
from syncspine.ingestion.dq_issues import DQIssueStore
from syncspine.ingestion.handlers import IngestionCycleHandler
from syncspine.ingestion.identifiers import (
    ASIN_PATTERN,
    NormalizedIdentifiers,
    chunked,
    normalize_identifiers,
)
from syncspine.ingestion.models import (
    CycleResult,
    CycleStatus,
    DQIssue,
    FetchedDocument,
    IngestionCycle,
    IssueStatus,
    IssueType,
    RawPayload,
    Severity,
    SourceFetchReport,
    TransformSummary,
)
from syncspine.ingestion.orchestrator import CYCLE_LOCK_KEY, IngestionOrchestrator
from syncspine.ingestion.raw_payloads import RawPayloadStore
from syncspine.ingestion.scheduler import IngestionScheduler
from syncspine.ingestion.sources import SourceClient, SourceFetcher, SourcePage
from syncspine.ingestion.targets import TargetProvider, TargetResolver, TrackedEntityStore
from syncspine.ingestion.transform import EntityTransformer, TransformOutcome, TransformStage

__all__ = [
    # models
    "CycleResult",
    "CycleStatus",
    "DQIssue",
    "FetchedDocument",
    "IngestionCycle",
    "IssueStatus",
    "IssueType",
    "RawPayload",
    "Severity",
    "SourceFetchReport",
    "TransformSummary",
    # stores
    "DQIssueStore",
    "IngestionCycleStore",
    "RawPayloadStore",
    "TrackedEntityStore",
    # pipeline
    "ASIN_PATTERN",
    "CYCLE_LOCK_KEY",
    "EntityTransformer",
    "IngestionCycleHandler",
    "IngestionOrchestrator",
    "IngestionScheduler",
    "NormalizedIdentifiers",
    "SourceClient",
    "SourceFetcher",
    "SourcePage",
    "TargetProvider",
    "TargetResolver",
    "TransformOutcome",
    "TransformStage",
    "chunked",
    "normalize_identifiers",
]
