"""Schema migrations for syncspine.

Numbered ``.sql`` files in ``sql/`` are applied in filename order and
recorded in the ``_migrations`` table, so applying twice is a no-op.

Modules
-------
runner    MigrationRunner with apply_pending() / get_pending() / get_applied()
"""

from syncspine.core.migrations.runner import MigrationResult, MigrationRunner

__all__ = ["MigrationResult", "MigrationRunner"]
