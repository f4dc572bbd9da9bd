"""
Shared pytest fixtures for syncspine tests.

Every store is built on a migrated SQLite database. File-backed databases
are used where several connections must see the same rows (concurrent
claims); everything else runs in memory.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from syncspine.core.connection import connect, initialize
from syncspine.core.settings import clear_settings_cache
from syncspine.execution import (
    DeadLetterQueue,
    DecorrelatedJitterBackoff,
    HandlerRegistry,
    JobStore,
    JobType,
)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep environment-driven settings from leaking between tests."""
    for key in list(os.environ):
        if key.startswith("SYNCSPINE_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Database
# =============================================================================


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "syncspine.db")


@pytest.fixture()
def conn():
    """Migrated in-memory database."""
    db = connect()
    initialize(db)
    yield db
    db.close()


@pytest.fixture()
def file_conn(db_path):
    """Migrated file database (share ``db_path`` with extra connections)."""
    db = connect(db_path)
    initialize(db)
    yield db
    db.close()


@pytest.fixture()
def bare_conn():
    """Database with no syncspine tables at all."""
    db = connect()
    yield db
    db.close()


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture()
def no_backoff() -> DecorrelatedJitterBackoff:
    """Retries become due immediately."""
    return DecorrelatedJitterBackoff(base_delay=0.0)


@pytest.fixture()
def job_store(conn, no_backoff) -> JobStore:
    return JobStore(conn, backoff=no_backoff)


@pytest.fixture()
def dlq(conn) -> DeadLetterQueue:
    return DeadLetterQueue(conn)


# =============================================================================
# Handlers
# =============================================================================


def _noop(ctx):
    return {"ok": True}


@pytest.fixture()
def make_registry() -> Callable[..., HandlerRegistry]:
    """Exhaustive registry: given handlers plus a no-op for every other type."""

    def factory(**overrides) -> HandlerRegistry:
        handlers = {t: _noop for t in JobType}
        for name, handler in overrides.items():
            handlers[JobType(name)] = handler
        return HandlerRegistry(handlers)

    return factory
