"""
Startup migration orchestration.

One run: take the distributed lock, read the audit log, fast-forward
namespaces that have no history at all, then execute every pending migration
in registration order. The first failing migration is recorded and stops the
run; nothing registered after it executes. The lock is always released with
the lease token it was acquired with.
"""

import asyncio
import inspect
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Set, Tuple

from loguru import logger

from aira_common.constants import MIGRATION_LOCK_KEY, MIGRATION_LOCK_TTL
from aira_common.settings import resolve_migration_timeout

from aira_web.database import SessionFactory
from aira_web.exceptions import (
    MigrationAlreadyRunning,
    MigrationFailed,
    MigrationLockError,
    MigrationStorageError,
    MigrationTimeout,
)
from aira_web.migration.base import LockProvider, MigrationStorage
from aira_web.migration.context import Migration
from aira_web.migration.registry import MigrationItem, MigrationRegistry, split_key


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MigrationRunResult:
    """Keys touched by one run, each in registration order."""

    skipped: Tuple[str, ...] = ()
    applied: Tuple[str, ...] = ()
    already_applied: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.skipped or self.applied)


class MigrationManager:
    def __init__(
        self,
        registry: MigrationRegistry,
        storage: MigrationStorage,
        lock_provider: LockProvider,
        lock_key: str = MIGRATION_LOCK_KEY,
        lock_ttl: int = MIGRATION_LOCK_TTL,
        timeout: Optional[float] = None,
        bootstrap_skip: bool = True,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.registry = registry
        self.storage = storage
        self.lock_provider = lock_provider
        self.lock_key = lock_key
        self.lock_ttl = lock_ttl
        # A migration may not outlive the lease it runs under.
        self.timeout = resolve_migration_timeout(lock_ttl, timeout)
        self.bootstrap_skip = bootstrap_skip
        self.session_factory = session_factory

    async def run_migrations(self) -> MigrationRunResult:
        """
        Run every pending migration once.

        Raises:
            MigrationAlreadyRunning: Another process holds the lock; nothing was touched.
            MigrationLockError: The lock provider failed or the lease was lost.
            MigrationStorageError: The audit log could not be read or written.
            MigrationFailed: A migration raised (or timed out); its failure is recorded.
        """
        items = self.registry.all_items()
        logger.info(f"Running migrations: {len(items)} registered")
        token = await self._acquire_lock()
        try:
            result = await self._run_locked(items, token)
        except MigrationTimeout as exc:
            if exc.abandoned_thread:
                # The worker thread cannot be stopped; the lease must outlive it.
                logger.warning(
                    f"Migration {exc.key} is still running in an abandoned worker thread, "
                    f"leaving lock {self.lock_key} to expire after its {self.lock_ttl}s lease"
                )
            else:
                await self._release_lock(token, raise_errors=False)
            raise
        except BaseException:
            await self._release_lock(token, raise_errors=False)
            raise
        await self._release_lock(token, raise_errors=True)
        logger.info(
            f"Migrations finished: {len(result.applied)} applied, {len(result.skipped)} skipped, "
            f"{len(result.already_applied)} already applied"
        )
        return result

    async def _run_locked(self, items: Sequence[MigrationItem], token: str) -> MigrationRunResult:
        try:
            applied_keys = await self.storage.get_applied_migrations()
        except Exception as exc:
            raise MigrationStorageError(f"failed to get applied migrations: {exc}") from exc

        applied: Set[str] = set(applied_keys)
        already_applied = tuple(item.key for item in items if item.key in applied)

        skipped: List[str] = []
        if self.bootstrap_skip:
            skipped = await self._bootstrap(items, applied)

        executed: List[str] = []
        for item in items:
            if item.key in applied:
                continue
            await self._extend_lease(token, item)
            await self._execute(item)
            applied.add(item.key)
            executed.append(item.key)

        return MigrationRunResult(
            skipped=tuple(skipped), applied=tuple(executed), already_applied=already_applied
        )

    async def _bootstrap(self, items: Sequence[MigrationItem], applied: Set[str]) -> List[str]:
        """
        Mark the backlog of every namespace without any history as skipped.

        Which namespaces are new is decided from the history loaded at the start
        of the run, so all of a new namespace's items are skipped, not only the
        first one.
        """
        with_records = {split_key(key)[0] for key in applied}
        skipped: List[str] = []
        for item in items:
            if item.namespace in with_records or item.key in applied:
                continue
            try:
                await self.storage.mark_skipped(item.namespace, item.name)
            except Exception as exc:
                raise MigrationStorageError(
                    f"failed to mark migration {item.key} as skipped: {exc}"
                ) from exc
            applied.add(item.key)
            skipped.append(item.key)
            logger.info(f"Skipped migration {item.key}: namespace {item.namespace} has no history")
        return skipped

    async def _execute(self, item: MigrationItem) -> None:
        migration = Migration(item.namespace, item.name, self.session_factory)
        migration.log("Starting migration: %s at %s", item.key, _now())
        logger.info(f"Starting migration {item.key}")

        # Set once a plain function's worker thread returns; None for coroutine functions.
        thread_done: Optional[threading.Event] = None
        if not inspect.iscoroutinefunction(item.func):
            thread_done = threading.Event()

        try:
            await asyncio.wait_for(
                self._invoke(item, migration, thread_done), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            failure = MigrationTimeout(
                item.namespace,
                item.name,
                self.timeout,
                abandoned_thread=thread_done is not None and not thread_done.is_set(),
            )
            await self._record_failure(item, migration, failure.cause, with_traceback=False)
            raise failure from None
        except Exception as exc:
            await self._record_failure(item, migration, exc)
            raise MigrationFailed(item.namespace, item.name, exc) from exc

        migration.log("Migration completed: %s at %s", item.key, _now())
        try:
            await self.storage.mark_applied(item.namespace, item.name)
        except Exception as exc:
            raise MigrationStorageError(
                f"failed to mark migration {item.key} as applied: {exc}"
            ) from exc
        logger.success(f"Migration {item.key} completed")

    @staticmethod
    async def _invoke(
        item: MigrationItem, migration: Migration, thread_done: Optional[threading.Event]
    ) -> None:
        if thread_done is None:
            await item.func(migration)
            return

        def _in_thread():
            try:
                return item.func(migration)
            finally:
                thread_done.set()

        result = await asyncio.to_thread(_in_thread)
        if inspect.isawaitable(result):
            await result

    async def _record_failure(
        self,
        item: MigrationItem,
        migration: Migration,
        exc: BaseException,
        with_traceback: bool = True,
    ) -> None:
        if with_traceback:
            logger.error(f"Migration {item.key} failed: {exc}\n{traceback.format_exc()}")
        else:
            logger.error(f"Migration {item.key} failed: {exc}")
        error_text = f"Migration failed: {exc}\nLogs:\n{migration.log_string()}"
        try:
            await self.storage.mark_failed(item.namespace, item.name, error_text)
        except Exception as store_exc:
            # The migration failure is what propagates; the missing audit row is reported here.
            logger.error(f"Could not record failure of migration {item.key}: {store_exc}")

    async def _acquire_lock(self) -> str:
        try:
            token = await self.lock_provider.lock(self.lock_key, self.lock_ttl)
        except Exception as exc:
            raise MigrationLockError(
                f"failed to acquire migration lock {self.lock_key!r}: {exc}"
            ) from exc
        if token is None:
            logger.warning(f"Migration lock {self.lock_key} is held elsewhere, not running migrations")
            raise MigrationAlreadyRunning(self.lock_key)
        return token

    async def _extend_lease(self, token: str, item: MigrationItem) -> None:
        try:
            held = await self.lock_provider.extend(self.lock_key, token, self.lock_ttl)
        except Exception as exc:
            raise MigrationLockError(
                f"failed to extend migration lock {self.lock_key!r} before {item.key}: {exc}"
            ) from exc
        if not held:
            raise MigrationLockError(
                f"migration lock {self.lock_key!r} expired before {item.key} could run"
            )

    async def _release_lock(self, token: str, raise_errors: bool) -> None:
        try:
            released = await self.lock_provider.unlock(self.lock_key, token)
        except Exception as exc:
            if raise_errors:
                raise MigrationLockError(
                    f"failed to release migration lock {self.lock_key!r}: {exc}"
                ) from exc
            logger.error(f"Failed to release migration lock {self.lock_key}: {exc}")
            return
        if not released:
            logger.warning(f"Migration lock {self.lock_key} had already expired at release")
