"""
CLI: ``syncspine worker`` — run the job worker.
"""

from __future__ import annotations

from collections.abc import Mapping

import typer

from syncspine.cli.utils import console, err_console, get_connection, load_factory

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    handlers: str = typer.Option(
        ..., "--handlers", "-H",
        help="module:factory returning a HandlerRegistry or {job_type: handler}",
    ),
    database: str | None = typer.Option(None, "--database", "-d"),
    poll_interval: float | None = typer.Option(
        None, "--poll-interval", help="Seconds between polls"
    ),
    batch_size: int | None = typer.Option(None, "--batch-size"),
    worker_id: str | None = typer.Option(None, "--worker-id"),
    once: bool = typer.Option(False, "--once", help="Run a single poll and exit"),
) -> None:
    """Poll the queue and run jobs until interrupted (Ctrl+C / SIGTERM)."""
    from syncspine.core.errors import ConfigError
    from syncspine.core.settings import get_settings
    from syncspine.execution import DeadLetterQueue, HandlerRegistry, JobStore, WorkerController

    settings = get_settings()
    conn = get_connection(database)
    registry = load_factory(handlers, conn, settings)
    if isinstance(registry, Mapping):
        registry = HandlerRegistry(registry)
    if not isinstance(registry, HandlerRegistry):
        err_console.print(f"[bold red]Error[/bold red]: {handlers} did not return handlers")
        raise typer.Exit(code=2)

    try:
        worker = WorkerController.from_settings(
            settings, JobStore(conn), registry, dlq=DeadLetterQueue(conn), worker_id=worker_id,
        )
    except ConfigError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.code}): {exc.message}")
        raise typer.Exit(code=1) from exc
    if poll_interval is not None:
        worker.poll_interval = poll_interval
    if batch_size is not None:
        worker.batch_size = batch_size

    if once:
        processed = worker.run_once()
        console.print(f"Processed [bold]{processed}[/bold] job(s)")
        return

    console.print(f"[bold green]Starting worker[/bold green] {worker.worker_id}")
    console.print(f"  Poll interval: {worker.poll_interval}s  Batch size: {worker.batch_size}")
    console.print("  Press Ctrl+C to stop\n")
    worker.run_forever()
    console.print(f"[dim]Stopped: {worker.stats.to_dict()}[/dim]")
