"""Tests for the exhaustive HandlerRegistry."""

from __future__ import annotations

import pytest

from syncspine.core.errors import ConfigError, UnknownJobTypeError
from syncspine.execution import HandlerRegistry, JobType


class TestHandlerRegistry:
    def test_missing_types_fail_validation(self):
        registry = HandlerRegistry({JobType.SYNC_KEEPA_ASIN: lambda ctx: None})
        assert JobType.RUN_INGESTION_CYCLE in registry.missing()
        with pytest.raises(ConfigError, match="RUN_INGESTION_CYCLE"):
            registry.validate()

    def test_exhaustive_registry_validates(self, make_registry):
        registry = make_registry()
        registry.validate()
        assert len(registry) == len(JobType)

    def test_register_by_string(self):
        registry = HandlerRegistry(job_types=(JobType.SYNC_KEEPA_ASIN,))
        registry.register("SYNC_KEEPA_ASIN", lambda ctx: 1)
        assert "SYNC_KEEPA_ASIN" in registry
        registry.validate()

    def test_unknown_type_rejected_at_registration(self):
        with pytest.raises(ConfigError):
            HandlerRegistry().register("NOT_A_TYPE", lambda ctx: None)

    def test_non_callable_rejected(self):
        with pytest.raises(ConfigError):
            HandlerRegistry().register(JobType.SYNC_KEEPA_ASIN, "nope")

    def test_resolve_unregistered(self):
        with pytest.raises(UnknownJobTypeError):
            HandlerRegistry().resolve("SYNC_KEEPA_ASIN")
