"""
CLI: ``syncspine ingest`` — ingestion cycles, DQ issues and tracked targets.

``run`` and ``schedule`` need an orchestrator built by the embedding
application (it owns the source clients and the transformer)::

    syncspine ingest run --pipeline myapp.pipeline:build_orchestrator
"""

from __future__ import annotations

import typer

from syncspine.cli.utils import console, load_factory, make_context, output_paged, output_result

app = typer.Typer(no_args_is_help=True)

_CYCLE_COLUMNS = ["id", "status", "target_count", "succeeded_count", "failed_count", "started_at",
                  "duration_ms", "error"]
_ISSUE_COLUMNS = ["id", "entity_id", "issue_type", "severity", "status", "message", "created_at"]

_PIPELINE_HELP = "module:factory(conn, settings) returning an IngestionOrchestrator"


@app.command("run")
def run(
    pipeline: str = typer.Option(..., "--pipeline", "-P", help=_PIPELINE_HELP),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one ingestion cycle now."""
    from syncspine.ops.ingestion import run_ingestion_once

    ctx, conn = make_context(database, dry_run=dry_run)
    orchestrator = load_factory(pipeline, conn, ctx.settings)
    output_result(run_ingestion_once(ctx, orchestrator), as_json=json_out, title="Cycle")


@app.command("schedule")
def schedule(
    pipeline: str = typer.Option(..., "--pipeline", "-P", help=_PIPELINE_HELP),
    interval: float | None = typer.Option(None, "--interval", help="Seconds between cycles"),
    no_immediate: bool = typer.Option(False, "--no-immediate", help="Wait one interval first"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Run ingestion cycles on a fixed interval until interrupted."""
    from syncspine.ingestion.scheduler import IngestionScheduler

    ctx, conn = make_context(database)
    orchestrator = load_factory(pipeline, conn, ctx.settings)
    scheduler = IngestionScheduler(
        orchestrator,
        interval_seconds=interval or ctx.settings.ingestion_interval_seconds,
        run_immediately=not no_immediate,
    )
    console.print(f"[bold green]Scheduling ingestion[/bold green] every "
                  f"{scheduler.interval_seconds:.0f}s  (Ctrl+C to stop)")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop()
    console.print(f"[dim]Stopped after {scheduler.runs} cycle(s)[/dim]")


@app.command("cycles")
def cycles(
    status: str | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(20, "--limit", "-n"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List recent ingestion cycles."""
    from syncspine.ops.ingestion import list_cycles
    from syncspine.ops.requests import ListCyclesRequest

    ctx, _ = make_context(database)
    output_paged(list_cycles(ctx, ListCyclesRequest(status=status, limit=limit)),
                 as_json=json_out, title="Ingestion Cycles", columns=_CYCLE_COLUMNS)


@app.command("cycle")
def cycle(
    cycle_id: str = typer.Argument(..., help="Cycle ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one cycle with its targets and DQ counts."""
    from syncspine.ops.ingestion import get_cycle
    from syncspine.ops.requests import GetCycleRequest

    ctx, _ = make_context(database)
    output_result(get_cycle(ctx, GetCycleRequest(cycle_id=cycle_id)), as_json=json_out,
                  title="Cycle")


@app.command("issues")
def issues(
    cycle_id: str | None = typer.Option(None, "--cycle", "-c"),
    entity_id: str | None = typer.Option(None, "--entity", "-e"),
    severity: str | None = typer.Option(None, "--severity"),
    limit: int = typer.Option(100, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List data-quality issues (open ones unless --cycle is given)."""
    from syncspine.ops.ingestion import list_dq_issues
    from syncspine.ops.requests import ListDQIssuesRequest

    ctx, _ = make_context(database)
    request = ListDQIssuesRequest(cycle_id=cycle_id, entity_id=entity_id, severity=severity,
                                  limit=limit, offset=offset)
    output_paged(list_dq_issues(ctx, request), as_json=json_out, title="DQ Issues",
                 columns=_ISSUE_COLUMNS)


@app.command("track")
def track(
    entity_ids: list[str] = typer.Argument(
        ..., help="Entity ids (ASINs), space or comma separated"
    ),
    scope_id: int | None = typer.Option(None, "--scope-id"),
    remove: bool = typer.Option(False, "--remove", help="Stop tracking instead"),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Add entities to the tracked ingestion targets."""
    from syncspine.ops.ingestion import track_entities
    from syncspine.ops.requests import TrackEntitiesRequest

    ids = tuple(part for value in entity_ids for part in value.split(","))
    ctx, _ = make_context(database, dry_run=dry_run)
    request = TrackEntitiesRequest(entity_ids=ids, scope_id=scope_id, remove=remove)
    output_result(track_entities(ctx, request), as_json=json_out, title="Tracked")
