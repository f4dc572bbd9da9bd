"""
Root Typer application for the syncspine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="syncspine",
    help="syncspine: durable job queue and rate-limited multi-source ingestion.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from syncspine import __version__

        typer.echo(f"syncspine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override SYNCSPINE_LOG_LEVEL"),
) -> None:
    """syncspine CLI: manage jobs, dead letters, workers and ingestion."""
    from syncspine.core.logging import configure_logging
    from syncspine.core.settings import get_settings

    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json,
                      service="syncspine-cli")


# ── Sub-command registration ─────────────────────────────────────────────

from syncspine.cli.db import app as db_app  # noqa: E402
from syncspine.cli.dlq import app as dlq_app  # noqa: E402
from syncspine.cli.ingest import app as ingest_app  # noqa: E402
from syncspine.cli.jobs import app as jobs_app  # noqa: E402
from syncspine.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Schema migrations and checks.")
app.add_typer(jobs_app, name="jobs", help="Create, list and cancel jobs.")
app.add_typer(dlq_app, name="dlq", help="Dead letter queue management.")
app.add_typer(worker_app, name="worker", help="Run the job worker.")
app.add_typer(ingest_app, name="ingest", help="Ingestion cycles, DQ issues and targets.")


if __name__ == "__main__":
    app()
