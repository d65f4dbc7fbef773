"""
Migration audit log ORM.

One row per migration attempt; rows are only ever appended. A migration is
considered applied once any row with success=True exists for its
namespace/migration pair (skipped migrations are recorded with logs="skip").

The table name carries the deployment's table prefix, so the model is built
per prefix with migration_log_model().
"""

from typing import Dict, Type

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.sql import func

from aira_common.constants import (
    DEFAULT_NAMESPACE,
    DEFAULT_TABLE_PREFIX,
    MIGRATION_LOG_TABLE,
    MIGRATION_NAME_MAX_LENGTH,
    MIGRATION_SKIP_SENTINEL,
)


class MigrationLogMixin:
    id = Column(Integer, primary_key=True, autoincrement=True)
    migration = Column(String(MIGRATION_NAME_MAX_LENGTH), nullable=False)
    namespace = Column(String(MIGRATION_NAME_MAX_LENGTH), nullable=False, default=DEFAULT_NAMESPACE)
    applied_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    logs = Column(Text, nullable=False, default="")
    success = Column(Boolean, nullable=False, default=False)

    @declared_attr
    def __table_args__(cls):
        return (Index(f"ix_{cls.__tablename__}_namespace_migration", "namespace", "migration"),)

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.migration}"

    @property
    def skipped(self) -> bool:
        return bool(self.success) and self.logs == MIGRATION_SKIP_SENTINEL


_models: Dict[str, Type[MigrationLogMixin]] = {}


def migration_log_model(table_prefix: str = DEFAULT_TABLE_PREFIX) -> Type[MigrationLogMixin]:
    """The MigrationLog model for <table_prefix>migration_logs, built once per prefix."""
    model = _models.get(table_prefix)
    if model is None:
        # Each prefix gets its own metadata so class names never clash in one registry.
        model = type(
            "MigrationLog",
            (MigrationLogMixin, declarative_base()),
            {"__tablename__": table_prefix + MIGRATION_LOG_TABLE},
        )
        _models[table_prefix] = model
    return model


MigrationLog = migration_log_model()
