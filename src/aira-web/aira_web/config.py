from aira_common.settings import (
    DatabaseSettings,
    MigrationSettings,
    RedisSettings,
    resolve_migration_timeout,
)


class FrameworkConfig(DatabaseSettings, RedisSettings, MigrationSettings):
    """Everything the framework bootstrap needs, read from the environment."""

    @property
    def effective_migration_timeout(self) -> float:
        return resolve_migration_timeout(self.migration_lock_ttl, self.migration_timeout)


settings = FrameworkConfig()
