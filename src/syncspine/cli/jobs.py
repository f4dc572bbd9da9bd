"""
CLI: ``syncspine jobs`` — create, inspect and cancel jobs.
"""

from __future__ import annotations

import json

import typer

from syncspine.cli.utils import err_console, load_factory, make_context, output_paged, output_result

app = typer.Typer(no_args_is_help=True)

_LIST_COLUMNS = ["id", "job_type", "status", "attempts", "max_attempts", "priority",
                 "entity_id", "created_at"]


@app.command("create")
def create(
    job_type: str = typer.Argument(..., help="Job type, e.g. SYNC_KEEPA_ASIN"),
    scope_type: str = typer.Option(
        "GLOBAL", "--scope", help="LISTING, ASIN, MARKETPLACE or GLOBAL"
    ),
    entity_id: str | None = typer.Option(None, "--entity", "-e", help="Entity id for the scope"),
    input_json: str = typer.Option("{}", "--input", "-i", help="Job input as a JSON object"),
    priority: int | None = typer.Option(None, "--priority", "-p"),
    max_attempts: int | None = typer.Option(None, "--max-attempts"),
    correlation_id: str | None = typer.Option(None, "--correlation-id"),
    no_dedup: bool = typer.Option(False, "--no-dedup", help="Allow a duplicate live job"),
    preconditions: str | None = typer.Option(
        None, "--preconditions", help="module:factory returning {JobType: validator}"
    ),
    user: str | None = typer.Option(None, "--user"),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Enqueue a job.

    Example::

        syncspine jobs create SYNC_KEEPA_ASIN --scope ASIN --entity B00TEST123
    """
    from syncspine.ops.jobs import create_job
    from syncspine.ops.requests import CreateJobRequest

    try:
        job_input = json.loads(input_json)
    except json.JSONDecodeError as exc:
        err_console.print(f"[bold red]Error[/bold red]: --input is not valid JSON: {exc}")
        raise typer.Exit(code=2) from exc
    if not isinstance(job_input, dict):
        err_console.print("[bold red]Error[/bold red]: --input must be a JSON object")
        raise typer.Exit(code=2)

    ctx, conn = make_context(database, dry_run=dry_run, user=user)
    if preconditions:
        ctx.preconditions.update(load_factory(preconditions, conn, ctx.settings))
    request = CreateJobRequest(
        job_type=job_type,
        scope_type=scope_type,
        entity_id=entity_id,
        input=job_input,
        priority=priority,
        max_attempts=max_attempts,
        correlation_id=correlation_id,
        dedup=not no_dedup,
    )
    output_result(create_job(ctx, request), as_json=json_out, title="Job")


@app.command("list")
def list_jobs(
    job_type: str | None = typer.Option(None, "--type", "-t"),
    status: str | None = typer.Option(None, "--status", "-s"),
    scope_type: str | None = typer.Option(None, "--scope"),
    entity_id: str | None = typer.Option(None, "--entity", "-e"),
    limit: int = typer.Option(50, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List jobs, newest first."""
    from syncspine.ops.jobs import list_jobs as _list
    from syncspine.ops.requests import ListJobsRequest

    ctx, _conn = make_context(database)
    request = ListJobsRequest(job_type=job_type, status=status, scope_type=scope_type,
                              entity_id=entity_id, limit=limit, offset=offset)
    output_paged(_list(ctx, request), as_json=json_out, title="Jobs", columns=_LIST_COLUMNS)


@app.command("get")
def get(
    job_id: str = typer.Argument(..., help="Job ID"),
    logs: bool = typer.Option(False, "--logs", help="Include job log lines"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one job."""
    from syncspine.ops.jobs import get_job
    from syncspine.ops.requests import GetJobRequest

    ctx, _conn = make_context(database)
    output_result(get_job(ctx, GetJobRequest(job_id=job_id, include_logs=logs)),
                  as_json=json_out, title="Job")


@app.command("cancel")
def cancel(
    job_id: str = typer.Argument(..., help="Job ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Cancel a PENDING or RUNNING job."""
    from syncspine.ops.jobs import cancel_job
    from syncspine.ops.requests import CancelJobRequest

    ctx, _conn = make_context(database, dry_run=dry_run)
    output_result(cancel_job(ctx, CancelJobRequest(job_id=job_id)), as_json=json_out,
                  title="Cancelled")


@app.command("counts")
def counts(
    job_type: str | None = typer.Option(None, "--type", "-t"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Job counts per status."""
    from syncspine.ops.jobs import job_counts

    ctx, _conn = make_context(database)
    output_result(job_counts(ctx, job_type), as_json=json_out, title="Jobs by status")
