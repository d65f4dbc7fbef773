"""
Interfaces the migration manager depends on.

Default implementations live in aira_common.redis.RedisLockProvider and
aira_web.migration.storage.DatabaseMigrationStorage; any object with the same
coroutine methods can be substituted.
"""

from typing import List, Optional, Protocol, runtime_checkable


@runtime_checkable
class LockProvider(Protocol):
    async def lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Return a lease token if the lock was taken, None if it is held elsewhere."""
        ...

    async def extend(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Refresh the lease. False if token no longer owns the key."""
        ...

    async def unlock(self, key: str, token: str) -> bool:
        """Release the lease. False if token no longer owns the key."""
        ...


@runtime_checkable
class MigrationStorage(Protocol):
    async def get_applied_migrations(self) -> List[str]:
        """Every namespace:name key with at least one successful record."""
        ...

    async def mark_applied(self, namespace: str, name: str) -> None: ...

    async def mark_failed(self, namespace: str, name: str, error_text: str) -> None: ...

    async def mark_skipped(self, namespace: str, name: str) -> None: ...
