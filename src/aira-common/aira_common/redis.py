"""
Redis-backed lease lock.

Acquisition stores a random token under the key with SET NX EX; extend and
release only touch the key while it still holds that token, so a holder whose
lease already expired can never release or prolong somebody else's lock.
"""

import uuid
from typing import Optional

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from aira_common.exceptions import LockProviderError
from aira_common.settings import RedisSettings

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


class RedisLockProvider:
    """Distributed lock with lease tokens on top of a single Redis instance."""

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Optional[RedisSettings] = None) -> "RedisLockProvider":
        settings = settings or RedisSettings()
        return cls(Redis.from_url(settings.redis_url, decode_responses=True))

    async def lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """
        Try to take the lock for ttl_seconds.

        Returns:
            The lease token when acquired, None when another holder owns the key.

        Raises:
            LockProviderError: If redis could not be reached.
        """
        token = uuid.uuid4().hex
        try:
            acquired = await self.client.set(key, token, nx=True, ex=ttl_seconds)
        except RedisError as exc:
            raise LockProviderError("acquire", key, exc) from exc
        if not acquired:
            logger.debug(f"Lock {key} is held by another process")
            return None
        logger.debug(f"Acquired lock {key} for {ttl_seconds}s")
        return token

    async def extend(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Reset the TTL to ttl_seconds if token still owns the key."""
        try:
            result = await self.client.eval(_EXTEND_SCRIPT, 1, key, token, ttl_seconds)
        except RedisError as exc:
            raise LockProviderError("extend", key, exc) from exc
        return bool(result)

    async def unlock(self, key: str, token: str) -> bool:
        """Delete the key if token still owns it. Returns False if the lease was lost."""
        try:
            result = await self.client.eval(_RELEASE_SCRIPT, 1, key, token)
        except RedisError as exc:
            raise LockProviderError("release", key, exc) from exc
        if not result:
            logger.warning(f"Lock {key} was no longer held by this process at release")
        return bool(result)

    async def close(self) -> None:
        await self.client.aclose()
