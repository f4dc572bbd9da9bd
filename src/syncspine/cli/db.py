"""
CLI: ``syncspine db`` — schema management.
"""

from __future__ import annotations

import typer

from syncspine.cli.utils import make_context, output_result

app = typer.Typer(no_args_is_help=True)


@app.command()
def migrate(
    database: str | None = typer.Option(None, "--database", "-d", help="Database path"),
    dry_run: bool = typer.Option(False, "--dry-run", help="List pending migrations only"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Apply pending schema migrations."""
    from syncspine.ops.database import migrate_database

    ctx, _conn = make_context(database, dry_run=dry_run)
    output_result(migrate_database(ctx), as_json=json_out, title="Migrations")


@app.command()
def check(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Verify every required table exists (exit 1 if not)."""
    from syncspine.ops.database import check_schema

    ctx, _conn = make_context(database)
    output_result(check_schema(ctx), as_json=json_out, title="Schema")
