"""
Column-level schema sync for registered ORM models.

auto_migrate() creates missing tables and adds columns a model declares but
the database lacks; drop_unused_columns() removes database columns a model no
longer declares. Neither alters column types or constraints; anything beyond
that belongs in a registered migration.
"""

from typing import List, Union

from loguru import logger
from sqlalchemy import Table, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

Model = Union[type, Table]


def _table_of(model: Model) -> Table:
    if isinstance(model, Table):
        return model
    table = getattr(model, "__table__", None)
    if table is None:
        raise TypeError(f"{model!r} is not a mapped model or Table")
    return table


class SchemaSync:
    def __init__(self):
        self._tables: List[Table] = []

    def register_models(self, *models: Model) -> None:
        for model in models:
            table = _table_of(model)
            if table not in self._tables:
                self._tables.append(table)

    @property
    def tables(self) -> List[Table]:
        return list(self._tables)

    async def auto_migrate(self, engine: AsyncEngine) -> List[str]:
        """Returns created table names and added table.column names."""
        if not self._tables:
            return []
        async with engine.begin() as conn:
            return await conn.run_sync(self._auto_migrate)

    async def drop_unused_columns(self, engine: AsyncEngine) -> List[str]:
        """Returns dropped table.column names."""
        if not self._tables:
            return []
        async with engine.begin() as conn:
            return await conn.run_sync(self._drop_unused_columns)

    def _auto_migrate(self, conn: Connection) -> List[str]:
        inspector = inspect(conn)
        preparer = conn.dialect.identifier_preparer
        changes: List[str] = []
        for table in self._tables:
            if not inspector.has_table(table.name, schema=table.schema):
                table.create(conn)
                logger.info(f"Created table {table.name}")
                changes.append(table.name)
                continue
            existing = {column["name"] for column in inspector.get_columns(table.name, schema=table.schema)}
            for column in table.columns:
                if column.name in existing:
                    continue
                column_type = column.type.compile(dialect=conn.dialect)
                conn.execute(
                    text(
                        f"ALTER TABLE {preparer.format_table(table)} "
                        f"ADD COLUMN {preparer.quote(column.name)} {column_type}"
                    )
                )
                logger.info(f"Added column {table.name}.{column.name} ({column_type})")
                changes.append(f"{table.name}.{column.name}")
        return changes

    def _drop_unused_columns(self, conn: Connection) -> List[str]:
        inspector = inspect(conn)
        preparer = conn.dialect.identifier_preparer
        dropped: List[str] = []
        for table in self._tables:
            if not inspector.has_table(table.name, schema=table.schema):
                continue
            declared = {column.name for column in table.columns}
            for column in inspector.get_columns(table.name, schema=table.schema):
                name = column["name"]
                if name in declared:
                    continue
                conn.execute(
                    text(
                        f"ALTER TABLE {preparer.format_table(table)} DROP COLUMN {preparer.quote(name)}"
                    )
                )
                logger.warning(f"Dropped unused column {table.name}.{name}")
                dropped.append(f"{table.name}.{name}")
        return dropped
