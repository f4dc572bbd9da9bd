"""
CLI: ``syncspine dlq`` — dead-letter queue commands.
"""

from __future__ import annotations

import typer

from syncspine.cli.utils import make_context, output_paged, output_result

app = typer.Typer(no_args_is_help=True)

_LIST_COLUMNS = ["id", "job_id", "job_type", "entity_id", "attempts", "error_code",
                 "failed_at", "resolved_at"]


@app.command("list")
def list_dead_letters(
    job_type: str | None = typer.Option(None, "--type", "-t"),
    include_resolved: bool = typer.Option(False, "--all", help="Include resolved entries"),
    limit: int = typer.Option(50, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List dead-letter entries."""
    from syncspine.ops.dlq import list_dead_letters as _list
    from syncspine.ops.requests import ListDeadLettersRequest

    ctx, _ = make_context(database)
    request = ListDeadLettersRequest(job_type=job_type, include_resolved=include_resolved,
                                     limit=limit, offset=offset)
    output_paged(_list(ctx, request), as_json=json_out, title="Dead Letters",
                 columns=_LIST_COLUMNS)


@app.command("resolve")
def resolve(
    dead_letter_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    notes: str | None = typer.Option(None, "--notes", "-m"),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Mark a dead-letter entry as handled."""
    from syncspine.ops.dlq import resolve_dead_letter
    from syncspine.ops.requests import ResolveDeadLetterRequest

    ctx, _ = make_context(database, dry_run=dry_run)
    result = resolve_dead_letter(ctx, ResolveDeadLetterRequest(dead_letter_id=dead_letter_id,
                                                               notes=notes))
    output_result(result, as_json=json_out, title="Resolved")


@app.command("replay")
def replay(
    dead_letter_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Re-enqueue a dead-lettered job with a fresh attempt budget."""
    from syncspine.ops.dlq import replay_dead_letter
    from syncspine.ops.requests import ReplayDeadLetterRequest

    ctx, _ = make_context(database, dry_run=dry_run)
    result = replay_dead_letter(ctx, ReplayDeadLetterRequest(dead_letter_id=dead_letter_id))
    output_result(result, as_json=json_out, title="Replayed")
