"""Fixtures for operation-layer tests."""

from __future__ import annotations

import pytest

from syncspine.ops import OperationContext


@pytest.fixture()
def ctx(conn) -> OperationContext:
    return OperationContext(conn=conn, caller="api")


@pytest.fixture()
def dry_ctx(conn) -> OperationContext:
    return OperationContext(conn=conn, caller="api", dry_run=True)
