DEFAULT_NAMESPACE = "app"
DEFAULT_TABLE_PREFIX = "aira_"

# Migrations
MIGRATION_LOCK_KEY = "migrate_lock"
MIGRATION_LOCK_TTL = 60
MIGRATION_LOG_TABLE = "migration_logs"
MIGRATION_SKIP_SENTINEL = "skip"
MIGRATION_KEY_SEPARATOR = ":"
# Seconds of lease kept back from the migration deadline for the audit write and release.
MIGRATION_LEASE_MARGIN = 5
# Width of the namespace/migration columns in the audit log.
MIGRATION_NAME_MAX_LENGTH = 120
