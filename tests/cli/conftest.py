"""Fixtures for CLI tests.

Commands run through Typer's ``CliRunner`` against a migrated file
database. Collaborator factories (``--handlers``, ``--pipeline``) are
written as small modules on a temporary ``sys.path`` entry.
"""

from __future__ import annotations

import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner, Result

from syncspine.cli.app import app
from syncspine.core.connection import connect, initialize

_HANDLERS_MODULE = """
from syncspine.execution import JobType


def build(conn, settings):
    return {job_type: (lambda ctx: {"ok": True}) for job_type in JobType}
"""

_PIPELINE_MODULE = """
from syncspine.ingestion import CycleResult, CycleStatus


class Pipeline:
    sources = ["keepa"]
    scope_id = 1

    def run_cycle(self, *, should_stop=None):
        return CycleResult("cli-cycle", CycleStatus.PARTIAL, target_count=2, succeeded=1,
                           failed=1, missing=["B2"])


def build(conn, settings):
    return Pipeline()
"""


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    # The CLI callback configures structlog against the runner's captured stdout.
    yield
    structlog.reset_defaults()


@pytest.fixture()
def cli_db(tmp_path: Path) -> str:
    path = str(tmp_path / "cli.db")
    db = connect(path)
    initialize(db)
    db.close()
    return path


@pytest.fixture()
def invoke() -> Callable[..., Result]:
    runner = CliRunner()

    def _invoke(*args: str) -> Result:
        return runner.invoke(app, ["--log-level", "CRITICAL", *args])

    return _invoke


@pytest.fixture()
def plugins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    plugin_dir = tmp_path / "plugins"
    plugin_dir.mkdir()
    (plugin_dir / "syncspine_test_handlers.py").write_text(textwrap.dedent(_HANDLERS_MODULE))
    (plugin_dir / "syncspine_test_pipeline.py").write_text(textwrap.dedent(_PIPELINE_MODULE))
    monkeypatch.syspath_prepend(str(plugin_dir))
    return plugin_dir
