"""Transform / reconciliation stage.

Runs after every raw payload of a cycle is durable. Two jobs:

1. Vanishing detection: every target entity with no raw payload in this
   cycle gets a CRITICAL DQ issue and counts as failed. Asking a source
   for an entity and silently getting nothing must never look like "no
   change".
2. Reconciliation: every entity that did produce payloads is handed, with
   its payloads grouped by source, to the per-entity transformer (an
   external collaborator). Each entity succeeds or fails on its own.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from syncspine.core.errors import SchemaUnavailableError
from syncspine.core.logging import get_logger
from syncspine.core.result import Err, try_result

from .dq_issues import DQIssueStore
from .models import IssueType, RawPayload, Severity, TransformSummary
from .raw_payloads import RawPayloadStore

logger = get_logger(__name__)

VANISHED_FIELD = "raw_payload"


@dataclass(frozen=True)
class TransformOutcome:
    """What a transformer reports for one entity."""

    success: bool
    error: str | None = None
    records_written: int = 0


class EntityTransformer(Protocol):
    """Reconciles one entity's source payloads into canonical records."""

    def transform(
        self,
        entity_id: str,
        scope_id: int,
        cycle_id: str,
        payloads_by_source: Mapping[str, list[RawPayload]],
    ) -> TransformOutcome | bool: ...


class TransformStage:
    """Vanishing detection plus per-entity reconciliation for one cycle."""

    def __init__(
        self,
        payloads: RawPayloadStore,
        issues: DQIssueStore,
        transformer: EntityTransformer,
    ):
        self._payloads = payloads
        self._issues = issues
        self._transformer = transformer

    def run(
        self,
        targets: Sequence[str],
        cycle_id: str,
        scope_id: int,
        *,
        sources: Sequence[str] = (),
    ) -> TransformSummary:
        """Reconcile a cycle.

        Args:
            targets: The cycle's frozen target list.
            cycle_id: Cycle whose raw payloads are reconciled.
            scope_id: Scope (marketplace) the cycle ran for.
            sources: Names of the sources fetched; recorded on vanishing issues.
        """
        summary = TransformSummary()
        produced = self._payloads.distinct_entities_for_cycle(cycle_id, scope_id=scope_id)

        summary.missing = [entity_id for entity_id in targets if entity_id not in produced]
        if summary.missing:
            logger.warning(
                "transform.vanishing_entities",
                cycle_id=cycle_id,
                count=len(summary.missing),
                sample=summary.missing[:10],
            )
            for entity_id in summary.missing:
                self._record_issue(
                    entity_id=entity_id,
                    scope_id=scope_id,
                    cycle_id=cycle_id,
                    issue_type=IssueType.API_ERROR,
                    severity=Severity.CRITICAL,
                    field_name=VANISHED_FIELD,
                    message=(
                        f"Entity {entity_id} was targeted for ingestion but no raw payloads "
                        "were received from any source"
                    ),
                    details={
                        "targeted": True,
                        "sources_received": {source: False for source in sources},
                    },
                )
            summary.failed += len(summary.missing)

        logger.info(
            "transform.started",
            cycle_id=cycle_id,
            entities=len(produced),
            targets=len(targets),
            missing=len(summary.missing),
        )

        for entity_id in sorted(produced):
            grouped = self._payloads.payloads_for_entity(entity_id, cycle_id, scope_id=scope_id)
            result = try_result(
                lambda: self._transformer.transform(entity_id, scope_id, cycle_id, grouped)
            )
            if isinstance(result, Err):
                summary.failed += 1
                summary.errors[entity_id] = f"{type(result.error).__name__}: {result.error}"
                logger.error("transform.entity_failed", entity_id=entity_id, error=str(result.error))
                self._record_issue(
                    entity_id=entity_id,
                    scope_id=scope_id,
                    cycle_id=cycle_id,
                    issue_type=IssueType.TRANSFORM_ERROR,
                    severity=Severity.WARN,
                    message=f"Transform failed: {result.error}",
                    details={"error_type": type(result.error).__name__,
                             "sources": sorted(grouped)},
                )
                continue

            outcome = result.value
            if isinstance(outcome, bool):
                outcome = TransformOutcome(success=outcome)
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors[entity_id] = outcome.error or "transform reported failure"
                logger.warning("transform.entity_rejected", entity_id=entity_id, error=outcome.error)

        logger.info("transform.completed", cycle_id=cycle_id, **summary.to_dict())
        return summary

    def _record_issue(self, **fields: Any) -> None:
        # The summary and the cycle row still carry the failure if the issue table is missing.
        try:
            self._issues.record(**fields)
        except SchemaUnavailableError as exc:
            logger.error("transform.issue_not_recorded", table=exc.table,
                         entity_id=fields["entity_id"], issue_type=fields["issue_type"].value)


__all__ = ["EntityTransformer", "TransformOutcome", "TransformStage", "VANISHED_FIELD"]
