"""
CLI utility helpers: connections, collaborator loading, output formatting.
"""

from __future__ import annotations

import importlib
import json
import sqlite3
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from syncspine.core.connection import connect
from syncspine.core.settings import SyncSettings, get_settings
from syncspine.ops.context import OperationContext
from syncspine.ops.result import OperationResult, PagedResult

console = Console()
err_console = Console(stderr=True)


# ── Connection helpers ───────────────────────────────────────────────────


def get_connection(database: str | None = None) -> sqlite3.Connection:
    """Open the database; defaults to ``SYNCSPINE_DATABASE_PATH``."""
    return connect(database or get_settings().database_path)


def make_context(
    database: str | None = None,
    *,
    dry_run: bool = False,
    user: str | None = None,
) -> tuple[OperationContext, sqlite3.Connection]:
    """Create an ``OperationContext`` + connection pair for CLI commands."""
    conn = get_connection(database)
    ctx = OperationContext(conn=conn, settings=get_settings(), caller="cli", user=user,
                           dry_run=dry_run)
    return ctx, conn


# ── Collaborator loading ─────────────────────────────────────────────────


def load_factory(path: str, conn: sqlite3.Connection, settings: SyncSettings) -> Any:
    """Resolve ``module:attribute`` and call it with ``(conn, settings)``.

    Handler registries, ingestion orchestrators and precondition tables
    live in the application that embeds syncspine; the CLI reaches them
    through such factories.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        err_console.print(f"[bold red]Error[/bold red]: expected 'module:attribute', got {path!r}")
        raise typer.Exit(code=2)
    try:
        target: Any = importlib.import_module(module_name)
        for part in attr.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as exc:
        err_console.print(f"[bold red]Error[/bold red]: cannot load {path}: {exc}")
        raise typer.Exit(code=2) from exc
    return target(conn, settings)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def _fail(result: OperationResult) -> None:
    err = result.error
    msg = err.message if err else "Unknown error"
    code = err.code if err else "ERROR"
    err_console.print(f"[bold red]Error[/bold red] ({code}): {msg}")
    if err and err.details:
        err_console.print(f"[dim]{json.dumps(err.details, default=str)}[/dim]")
    raise typer.Exit(code=1)


def output_result(
    result: OperationResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render an ``OperationResult``; exits 1 on failure."""
    if not result.success:
        _fail(result)

    data = result.data
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def output_paged(
    result: PagedResult,
    *,
    as_json: bool = False,
    title: str = "",
    columns: list[str] | None = None,
) -> None:
    """Render a ``PagedResult`` with pagination info; exits 1 on failure."""
    if not result.success:
        _fail(result)

    items = result.data or []
    if as_json:
        payload = {
            "items": [_to_dict(d) for d in items],
            "total": result.total,
            "limit": result.limit,
            "offset": result.offset,
            "has_more": result.has_more,
        }
        console.print_json(json.dumps(payload, default=str))
        return

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    _print_table(items, title=title, columns=columns)
    console.print(f"\n[dim]Showing {len(items)} of {result.total} (offset {result.offset})[/dim]")


def _print_table(items: list, *, title: str = "", columns: list[str] | None = None) -> None:
    rows = [_to_dict(item) for item in items]
    keys = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for key in keys:
        table.add_column(key, overflow="fold")
    for row in rows:
        table.add_row(*(_cell(row.get(key)) for key in keys))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {_cell(v)}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)
