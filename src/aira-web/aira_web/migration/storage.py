"""
SQL-backed migration audit log.

Every call appends a new MigrationLog row; nothing is updated in place. The
log table is created on first use, so the store works against an empty
database before any other schema exists.
"""

from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from aira_common.constants import DEFAULT_TABLE_PREFIX, MIGRATION_SKIP_SENTINEL
from aira_common.schemas.migration_log import MigrationLogMixin, migration_log_model

from aira_web.database import SessionFactory, build_session_factory, session_scope
from aira_web.migration.registry import migration_key


class DatabaseMigrationStorage:
    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: Optional[SessionFactory] = None,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
    ):
        self.engine = engine
        self.model = migration_log_model(table_prefix)
        self.session_factory = session_factory or build_session_factory(engine)
        self._provisioned = False

    async def ensure_table(self) -> None:
        """Create the migration log table if it does not exist yet."""
        if self._provisioned:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(self.model.__table__.create, checkfirst=True)
        self._provisioned = True
        logger.debug(f"Migration log table {self.model.__tablename__} is ready")

    async def get_applied_migrations(self) -> List[str]:
        await self.ensure_table()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(self.model.namespace, self.model.migration)
                .where(self.model.success.is_(True))
                .distinct()
            )
            return [migration_key(namespace, name) for namespace, name in result.all()]

    async def mark_applied(self, namespace: str, name: str) -> None:
        await self._append(namespace, name, success=True, logs="")

    async def mark_failed(self, namespace: str, name: str, error_text: str) -> None:
        await self._append(namespace, name, success=False, logs=error_text)

    async def mark_skipped(self, namespace: str, name: str) -> None:
        await self._append(namespace, name, success=True, logs=MIGRATION_SKIP_SENTINEL)

    async def list_records(self, namespace: Optional[str] = None) -> List[MigrationLogMixin]:
        """Audit records, oldest first, optionally limited to one namespace."""
        await self.ensure_table()
        query = select(self.model).order_by(self.model.id)
        if namespace is not None:
            query = query.where(self.model.namespace == namespace)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _append(self, namespace: str, name: str, success: bool, logs: str) -> None:
        await self.ensure_table()
        async with session_scope(self.session_factory) as session:
            session.add(
                self.model(
                    namespace=namespace,
                    migration=name,
                    applied_at=datetime.now(timezone.utc),
                    success=success,
                    logs=logs,
                )
            )
