"""
Framework bootstrap: wires the default backends (SQL audit log, Redis lock)
around a migration registry and runs the startup sequence.
"""

from typing import Optional

from loguru import logger
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from aira_common.redis import RedisLockProvider

from aira_web.config import FrameworkConfig
from aira_web.database import build_engine, build_session_factory
from aira_web.migration.base import LockProvider, MigrationStorage
from aira_web.migration.manager import MigrationManager, MigrationRunResult
from aira_web.migration.registry import MigrationFunc, MigrationItem, MigrationRegistry
from aira_web.migration.schema_sync import Model, SchemaSync
from aira_web.migration.storage import DatabaseMigrationStorage


class Framework:
    """
    One application's startup state. Build it once, register migrations and
    models, then await start(); any exception it raises should abort startup.
    """

    def __init__(
        self,
        config: Optional[FrameworkConfig] = None,
        engine: Optional[AsyncEngine] = None,
        redis: Optional[Redis] = None,
        lock_provider: Optional[LockProvider] = None,
        storage: Optional[MigrationStorage] = None,
    ):
        self.config = config or FrameworkConfig()
        self.engine = engine or build_engine(self.config)
        self.session_factory = build_session_factory(self.engine)
        if lock_provider is None:
            lock_provider = (
                RedisLockProvider(redis)
                if redis is not None
                else RedisLockProvider.from_settings(self.config)
            )
        self.lock_provider = lock_provider
        self.storage = storage or DatabaseMigrationStorage(
            self.engine, self.session_factory, table_prefix=self.config.table_prefix
        )
        self.registry = MigrationRegistry(default_namespace=self.config.default_namespace)
        self.schema = SchemaSync()

    def register_migration(self, namespace: str, name: str, func: MigrationFunc) -> MigrationItem:
        return self.registry.register(namespace, name, func)

    def add_migration(self, name: str, func: MigrationFunc) -> MigrationItem:
        return self.registry.add(name, func)

    def register_models(self, *models: Model) -> None:
        self.schema.register_models(*models)

    def migration_manager(self) -> MigrationManager:
        return MigrationManager(
            registry=self.registry,
            storage=self.storage,
            lock_provider=self.lock_provider,
            lock_key=self.config.migration_lock_key,
            lock_ttl=self.config.migration_lock_ttl,
            timeout=self.config.effective_migration_timeout,
            bootstrap_skip=self.config.migration_bootstrap_skip,
            session_factory=self.session_factory,
        )

    async def start(self) -> MigrationRunResult:
        """Sync registered model tables, then run pending migrations once."""
        changes = await self.schema.auto_migrate(self.engine)
        if changes:
            logger.info(f"Schema sync applied {len(changes)} change(s): {', '.join(changes)}")
        return await self.migration_manager().run_migrations()

    async def drop_unused_columns(self):
        return await self.schema.drop_unused_columns(self.engine)
