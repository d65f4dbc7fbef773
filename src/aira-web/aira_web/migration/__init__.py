"""
Startup migrations: named, ordered functions applied exactly once per
namespace:name key, coordinated across instances with a distributed lock and
recorded in an append-only audit log.

Register migrations on a MigrationRegistry (usually through
aira_web.framework.Framework) before calling MigrationManager.run_migrations().
"""

from aira_web.migration.base import LockProvider, MigrationStorage
from aira_web.migration.context import Migration
from aira_web.migration.manager import MigrationManager, MigrationRunResult
from aira_web.migration.registry import MigrationItem, MigrationRegistry, migration_key
from aira_web.migration.schema_sync import SchemaSync
from aira_web.migration.storage import DatabaseMigrationStorage

__all__ = [
    "DatabaseMigrationStorage",
    "LockProvider",
    "Migration",
    "MigrationItem",
    "MigrationManager",
    "MigrationRegistry",
    "MigrationRunResult",
    "MigrationStorage",
    "SchemaSync",
    "migration_key",
]
