import asyncio
import threading
from unittest.mock import AsyncMock, patch

import pytest

from aira_web.exceptions import (
    MigrationAlreadyRunning,
    MigrationFailed,
    MigrationLockError,
    MigrationStorageError,
    MigrationTimeout,
)
from aira_web.migration.manager import MigrationManager

from fixtures.migration_fixtures import *  # noqa


@pytest.mark.asyncio
async def test_runs_pending_migrations_in_registration_order(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("app", "initial")
    registry.add("a", recording_migration("a"))
    registry.add("b", recording_migration("b"))
    registry.add("c", recording_migration("c"))

    result = await manager.run_migrations()

    assert calls == ["a", "b", "c"]
    assert result.applied == ("app:a", "app:b", "app:c")
    assert result.skipped == ()
    assert result.already_applied == ()
    assert [r[1] for r in storage.records[1:]] == ["a", "b", "c"]
    assert all(r[2] and r[3] == "" for r in storage.records[1:])


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(manager, registry, storage, calls, recording_migration):
    storage.seed("app", "initial")
    registry.add("a", recording_migration("a"))
    await manager.run_migrations()
    records_after_first = list(storage.records)

    result = await manager.run_migrations()

    assert calls == ["a"]
    assert storage.records == records_after_first
    assert result.applied == () and result.skipped == ()
    assert result.already_applied == ("app:a",)
    assert not result.changed


@pytest.mark.asyncio
async def test_failure_stops_the_run_and_resumes_in_order(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("app", "initial")
    state = {"broken": True}

    async def b(migration):
        calls.append("b")
        if state["broken"]:
            raise RuntimeError("b exploded")

    registry.add("a", recording_migration("a"))
    registry.add("b", b)
    registry.add("c", recording_migration("c"))

    with pytest.raises(MigrationFailed) as exc_info:
        await manager.run_migrations()

    assert exc_info.value.key == "app:b"
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert calls == ["a", "b"]
    assert "app:b" not in await storage.get_applied_migrations()

    state["broken"] = False
    calls.clear()
    result = await manager.run_migrations()

    assert calls == ["b", "c"]
    assert result.applied == ("app:b", "app:c")
    assert result.already_applied == ("app:a",)


@pytest.mark.asyncio
async def test_failed_migration_is_recorded_with_logs(manager, registry, storage, recording_migration):
    storage.seed("app", "initial")
    registry.add("broken", recording_migration("broken", fail=True))

    with pytest.raises(MigrationFailed):
        await manager.run_migrations()

    records = storage.records_for("app:broken")
    assert len(records) == 1
    _, _, success, logs = records[0]
    assert success is False
    assert logs.startswith("Migration failed: broken exploded\nLogs:\n")
    assert "Starting migration: app:broken at " in logs
    assert "working on broken" in logs
    assert "app:broken" not in await storage.get_applied_migrations()


@pytest.mark.asyncio
async def test_new_namespace_is_fast_forwarded(manager, registry, storage, calls, recording_migration):
    registry.register("tenantX", "m1", recording_migration("x1"))
    registry.register("tenantX", "m2", recording_migration("x2"))

    result = await manager.run_migrations()

    assert calls == []
    assert result.skipped == ("tenantX:m1", "tenantX:m2")
    assert storage.records == [
        ("tenantX", "m1", True, "skip"),
        ("tenantX", "m2", True, "skip"),
    ]


@pytest.mark.asyncio
async def test_namespace_with_history_runs_only_missing(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("tenantY", "m1")
    registry.register("tenantY", "m1", recording_migration("y1"))
    registry.register("tenantY", "m2", recording_migration("y2"))

    result = await manager.run_migrations()

    assert calls == ["y2"]
    assert result.already_applied == ("tenantY:m1",)
    assert result.applied == ("tenantY:m2",)
    assert result.skipped == ()
    assert len(storage.records_for("tenantY:m1")) == 1


@pytest.mark.asyncio
async def test_namespaces_bootstrap_independently(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("tenantY", "m1")
    registry.register("tenantX", "m1", recording_migration("x1"))
    registry.register("tenantY", "m1", recording_migration("y1"))
    registry.register("tenantX", "m2", recording_migration("x2"))
    registry.register("tenantY", "m2", recording_migration("y2"))

    result = await manager.run_migrations()

    assert calls == ["y2"]
    assert result.skipped == ("tenantX:m1", "tenantX:m2")
    assert result.applied == ("tenantY:m2",)


@pytest.mark.asyncio
async def test_failed_records_do_not_count_as_history(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("tenantZ", "m1", success=False, logs="Migration failed: boom")
    registry.register("tenantZ", "m1", recording_migration("z1"))

    result = await manager.run_migrations()

    assert calls == []
    assert result.skipped == ("tenantZ:m1",)


@pytest.mark.asyncio
async def test_bootstrap_skip_can_be_disabled(registry, storage, lock_provider, calls, recording_migration):
    manager = MigrationManager(registry, storage, lock_provider, bootstrap_skip=False)
    registry.register("tenantX", "m1", recording_migration("x1"))

    result = await manager.run_migrations()

    assert calls == ["x1"]
    assert result.applied == ("tenantX:m1",)
    assert result.skipped == ()


@pytest.mark.asyncio
async def test_same_name_in_different_namespaces_is_tracked_separately(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("a", "m1")
    storage.seed("b", "other")
    registry.register("a", "m1", recording_migration("a1"))
    registry.register("b", "m1", recording_migration("b1"))

    result = await manager.run_migrations()

    assert calls == ["b1"]
    assert result.applied == ("b:m1",)
    assert result.already_applied == ("a:m1",)


@pytest.mark.asyncio
async def test_concurrent_runs_only_one_proceeds(registry, storage, lock_provider):
    storage.seed("app", "initial")
    executions = []

    async def slow(migration):
        executions.append(migration.key)
        await asyncio.sleep(0.01)

    registry.add("slow", slow)
    first = MigrationManager(registry, storage, lock_provider)
    second = MigrationManager(registry, storage, lock_provider)

    results = await asyncio.gather(
        first.run_migrations(), second.run_migrations(), return_exceptions=True
    )

    contended = [r for r in results if isinstance(r, MigrationAlreadyRunning)]
    completed = [r for r in results if not isinstance(r, BaseException)]
    assert len(contended) == 1
    assert len(completed) == 1
    assert executions == ["app:slow"]
    assert len(storage.records_for("app:slow")) == 1
    assert lock_provider.holders == {}


@pytest.mark.asyncio
async def test_contention_touches_nothing(manager, registry, storage, lock_provider, calls, recording_migration):
    registry.add("a", recording_migration("a"))
    lock_provider.holders["migrate_lock"] = "someone-else"

    with pytest.raises(MigrationAlreadyRunning):
        await manager.run_migrations()

    assert calls == []
    assert storage.records == []
    assert lock_provider.holders == {"migrate_lock": "someone-else"}


@pytest.mark.asyncio
async def test_lock_provider_error_aborts(manager, registry, storage, lock_provider, recording_migration):
    registry.add("a", recording_migration("a"))
    lock_provider.lock = AsyncMock(side_effect=ConnectionError("redis down"))

    with pytest.raises(MigrationLockError, match="failed to acquire migration lock"):
        await manager.run_migrations()

    assert storage.records == []


@pytest.mark.asyncio
async def test_lock_is_released_after_failure(manager, registry, storage, lock_provider, recording_migration):
    storage.seed("app", "initial")
    registry.add("broken", recording_migration("broken", fail=True))

    with pytest.raises(MigrationFailed):
        await manager.run_migrations()

    assert lock_provider.holders == {}
    assert lock_provider.calls[-1] == ("unlock", "migrate_lock")


@pytest.mark.asyncio
async def test_history_read_error_releases_lock(manager, registry, storage, lock_provider, recording_migration):
    registry.add("a", recording_migration("a"))
    storage.get_applied_migrations = AsyncMock(side_effect=OSError("db gone"))

    with pytest.raises(MigrationStorageError, match="failed to get applied migrations"):
        await manager.run_migrations()

    assert lock_provider.holders == {}


@pytest.mark.asyncio
async def test_skip_bookkeeping_error_aborts(manager, registry, storage, calls, recording_migration):
    registry.register("fresh", "m1", recording_migration("m1"))
    storage.mark_skipped = AsyncMock(side_effect=OSError("disk full"))

    with pytest.raises(MigrationStorageError, match="fresh:m1 as skipped"):
        await manager.run_migrations()

    assert calls == []


@pytest.mark.asyncio
async def test_mark_applied_error_aborts_before_next_migration(
    manager, registry, storage, calls, recording_migration
):
    storage.seed("app", "initial")
    registry.add("a", recording_migration("a"))
    registry.add("b", recording_migration("b"))
    storage.mark_applied = AsyncMock(side_effect=OSError("write failed"))

    with pytest.raises(MigrationStorageError, match="app:a as applied"):
        await manager.run_migrations()

    assert calls == ["a"]


@pytest.mark.asyncio
async def test_failure_is_raised_even_if_it_cannot_be_recorded(
    manager, registry, storage, recording_migration
):
    storage.seed("app", "initial")
    registry.add("broken", recording_migration("broken", fail=True))
    storage.mark_failed = AsyncMock(side_effect=OSError("write failed"))

    with pytest.raises(MigrationFailed):
        await manager.run_migrations()

    storage.mark_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_slow_migration_times_out(registry, storage, lock_provider):
    storage.seed("app", "initial")

    async def hangs(migration):
        await asyncio.sleep(10)

    registry.add("hangs", hangs)
    manager = MigrationManager(registry, storage, lock_provider, timeout=0.05)

    with pytest.raises(MigrationTimeout) as exc_info:
        await manager.run_migrations()

    assert exc_info.value.timeout == 0.05
    assert exc_info.value.abandoned_thread is False
    (_, _, success, logs), = storage.records_for("app:hangs")
    assert success is False
    assert "did not finish within 0.05s" in logs
    assert lock_provider.holders == {}


def test_timeout_defaults_inside_lock_ttl(registry, storage, lock_provider):
    manager = MigrationManager(registry, storage, lock_provider, lock_ttl=30)

    assert manager.timeout == 25.0


@pytest.mark.parametrize("lock_ttl,timeout", [(60, 600), (60, 60), (60, 0), (60, -1)])
def test_timeout_must_fit_inside_lock_ttl(registry, storage, lock_provider, lock_ttl, timeout):
    with pytest.raises(ValueError, match="shorter than the lock TTL"):
        MigrationManager(registry, storage, lock_provider, lock_ttl=lock_ttl, timeout=timeout)


@pytest.mark.asyncio
async def test_timeout_is_logged_without_traceback(registry, storage, lock_provider):
    storage.seed("app", "initial")

    async def hangs(migration):
        await asyncio.sleep(10)

    registry.add("hangs", hangs)
    manager = MigrationManager(registry, storage, lock_provider, timeout=0.05)

    with patch("aira_web.migration.manager.logger") as mock_logger:
        with pytest.raises(MigrationTimeout):
            await manager.run_migrations()

    mock_logger.error.assert_called_once_with(
        "Migration app:hangs failed: did not finish within 0.05s"
    )


@pytest.mark.asyncio
async def test_timed_out_sync_migration_keeps_the_lock(registry, storage, lock_provider):
    storage.seed("app", "initial")
    unblock = threading.Event()

    def blocks(migration):
        unblock.wait(5)

    registry.add("blocks", blocks)
    manager = MigrationManager(registry, storage, lock_provider, lock_ttl=5, timeout=0.05)

    try:
        with pytest.raises(MigrationTimeout) as exc_info:
            await manager.run_migrations()

        assert exc_info.value.abandoned_thread is True
        assert "migrate_lock" in lock_provider.holders
        assert ("unlock", "migrate_lock") not in lock_provider.calls
        (_, _, success, _), = storage.records_for("app:blocks")
        assert success is False

        other = MigrationManager(registry, storage, lock_provider, lock_ttl=5)
        with pytest.raises(MigrationAlreadyRunning):
            await other.run_migrations()
    finally:
        unblock.set()


@pytest.mark.asyncio
async def test_lost_lease_stops_the_run(manager, registry, storage, lock_provider, calls):
    storage.seed("app", "initial")

    async def first(migration):
        calls.append("first")
        lock_provider.expire("migrate_lock")

    async def second(migration):
        calls.append("second")

    registry.add("first", first)
    registry.add("second", second)

    with pytest.raises(MigrationLockError, match="expired before app:second"):
        await manager.run_migrations()

    assert calls == ["first"]
    assert "app:first" in await storage.get_applied_migrations()


@pytest.mark.asyncio
async def test_release_error_after_success_is_raised(manager, registry, storage, lock_provider, recording_migration):
    storage.seed("app", "initial")
    registry.add("a", recording_migration("a"))
    lock_provider.unlock = AsyncMock(side_effect=ConnectionError("redis down"))

    with pytest.raises(MigrationLockError, match="failed to release"):
        await manager.run_migrations()


@pytest.mark.asyncio
async def test_release_error_does_not_mask_migration_failure(
    manager, registry, storage, lock_provider, recording_migration
):
    storage.seed("app", "initial")
    registry.add("broken", recording_migration("broken", fail=True))
    lock_provider.unlock = AsyncMock(side_effect=ConnectionError("redis down"))

    with pytest.raises(MigrationFailed):
        await manager.run_migrations()


@pytest.mark.asyncio
async def test_sync_migration_functions_are_supported(manager, registry, storage):
    storage.seed("app", "initial")
    seen = []

    def plain(migration):
        migration.log("plain %d", 1)
        seen.append(migration.lines)

    registry.add("plain", plain)

    result = await manager.run_migrations()

    assert result.applied == ("app:plain",)
    assert seen[0][0].startswith("Starting migration: app:plain at ")
    assert seen[0][1] == "plain 1"
