"""
syncspine: durable job queue and rate-limited multi-source ingestion.

Packages
--------
core        errors, result/outcome types, logging, settings, schema, migrations
execution   job store, worker controller, DLQ, rate limiting, timeouts, retry, locks
ingestion   ingestion orchestrator, source fetchers, raw payload / DQ stores, transform
ops         typed operations consumed by the CLI and any HTTP layer
cli         ``syncspine`` command line
"""

__version__ = "0.1.0"
