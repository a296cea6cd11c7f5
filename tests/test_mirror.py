import pytest

from rewardsync.db.session import MirrorStorage
from rewardsync.mirror import LocalMirrorCache
from rewardsync.models import LocalMirrorEntry, MirrorSource, UserRecord

KEY = "telegram_users/123456"


def _record(balance: int) -> UserRecord:
    return UserRecord(external_id="123456", balance=balance)


def _entry(
    balance: int,
    version: int,
    *,
    source=MirrorSource.AUTHORITATIVE,
    captured_at=1000.0,
    revision: int = 0,
) -> LocalMirrorEntry:
    return LocalMirrorEntry(
        record=_record(balance),
        captured_at=captured_at,
        source=source,
        version=version,
        revision=revision,
    )


@pytest.mark.asyncio
async def test_set_is_last_writer_wins_by_version() -> None:
    mirror = LocalMirrorCache()
    changes = []
    mirror.add_observer(changes.append)

    assert await mirror.set(KEY, _entry(10, 2)) is True
    assert await mirror.set(KEY, _entry(99, 1)) is False
    assert await mirror.set(KEY, _entry(99, 2)) is False

    assert mirror.get(KEY).record.balance == 10
    assert [change.entry.version for change in changes] == [2]


@pytest.mark.asyncio
async def test_remote_changes_drop_late_revisions() -> None:
    mirror = LocalMirrorCache()

    await mirror.apply_remote(KEY, _record(10), 3)
    assert await mirror.apply_remote(KEY, _record(5), 2) is None
    assert await mirror.apply_remote(KEY, _record(5), 3) is None
    entry = await mirror.apply_remote(KEY, _record(20), 4)

    assert entry is not None
    assert mirror.get(KEY).record.balance == 20
    assert mirror.get(KEY).version == 2
    assert mirror.get(KEY).source is MirrorSource.AUTHORITATIVE


@pytest.mark.asyncio
async def test_remote_changes_wait_for_pending_optimistic_write() -> None:
    mirror = LocalMirrorCache()
    await mirror.apply_remote(KEY, _record(100), 1)

    await mirror.put_optimistic(KEY, _record(150))
    assert await mirror.apply_remote(KEY, _record(100).replace(daily_streak=2), 2) is None
    assert mirror.get(KEY).record.balance == 150

    await mirror.rollback(KEY, _record(100))

    entry = mirror.get(KEY)
    assert entry.source is MirrorSource.AUTHORITATIVE
    assert entry.record.daily_streak == 2
    assert entry.revision == 2


@pytest.mark.asyncio
async def test_commit_supersedes_older_deferred_change() -> None:
    mirror = LocalMirrorCache()
    await mirror.apply_remote(KEY, _record(100), 1)
    await mirror.put_optimistic(KEY, _record(150))
    await mirror.apply_remote(KEY, _record(100).replace(daily_streak=1), 2)

    await mirror.commit(KEY, _record(150).replace(daily_streak=1), 3)

    entry = mirror.get(KEY)
    assert entry.record.balance == 150
    assert entry.revision == 3


@pytest.mark.asyncio
async def test_cached_entry_is_confirmed_by_unchanged_revision() -> None:
    mirror = LocalMirrorCache()
    await mirror.set(KEY, LocalMirrorEntry(_record(10), 0.0, MirrorSource.CACHED, version=4, revision=7))

    await mirror.apply_remote(KEY, _record(10), 7)

    entry = mirror.get(KEY)
    assert entry.source is MirrorSource.AUTHORITATIVE
    assert entry.version == 5


@pytest.mark.asyncio
async def test_external_entries_never_override_pending_write() -> None:
    mirror = LocalMirrorCache()
    await mirror.apply_remote(KEY, _record(1), 1)
    await mirror.put_optimistic(KEY, _record(2))

    assert await mirror.merge_external(KEY, _entry(50, 10)) is False

    await mirror.commit(KEY, _record(2), 2)
    assert await mirror.merge_external(KEY, _entry(50, 10, source=MirrorSource.OPTIMISTIC, revision=2)) is True
    assert mirror.get(KEY).source is MirrorSource.CACHED


@pytest.mark.asyncio
async def test_external_entries_with_older_revision_are_ignored() -> None:
    mirror = LocalMirrorCache()
    await mirror.apply_remote(KEY, _record(30), 5)

    assert await mirror.merge_external(KEY, _entry(10, 9, revision=3)) is False
    assert await mirror.merge_external(KEY, _entry(40, 9, revision=6)) is True
    assert mirror.get(KEY).record.balance == 40


@pytest.mark.asyncio
async def test_durable_mirror_survives_restart(tmp_path) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}"
    clock = [1000.0]

    storage = MirrorStorage(url)
    await storage.init()
    mirror = LocalMirrorCache(storage, stale_after=600, clock=lambda: clock[0])
    await mirror.apply_remote(KEY, _record(10), 1)
    await mirror.apply_remote("telegram_users/654321", UserRecord(external_id="654321"), 1)
    await mirror.put_optimistic("telegram_users/654321", UserRecord(external_id="654321", balance=5))
    await storage.dispose()

    clock[0] = 1100.0
    storage = MirrorStorage(url)
    await storage.init()
    restarted = LocalMirrorCache(storage, stale_after=600, clock=lambda: clock[0])
    stale = await restarted.load()

    assert stale == ["telegram_users/654321"]
    assert restarted.get(KEY).record.balance == 10
    assert restarted.get(KEY).source is MirrorSource.AUTHORITATIVE
    assert restarted.get("telegram_users/654321").source is MirrorSource.CACHED

    clock[0] = 5000.0
    assert sorted(await LocalMirrorCache(storage, stale_after=600, clock=lambda: clock[0]).load()) == [
        KEY,
        "telegram_users/654321",
    ]
    await storage.dispose()


@pytest.mark.asyncio
async def test_storage_only_accepts_higher_versions(tmp_path) -> None:
    storage = MirrorStorage(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await storage.init()

    await storage.save(KEY, _entry(10, 5))
    await storage.save(KEY, _entry(99, 4))
    assert (await storage.load(KEY)).record.balance == 10

    await storage.save(KEY, _entry(20, 6))
    assert (await storage.load(KEY)).record.balance == 20

    await storage.delete(KEY)
    assert await storage.load(KEY) is None
    await storage.dispose()


@pytest.mark.asyncio
async def test_sync_from_storage_picks_up_other_processes(tmp_path) -> None:
    storage = MirrorStorage(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await storage.init()
    ours = LocalMirrorCache(storage)
    theirs = LocalMirrorCache(storage)

    await theirs.apply_remote(KEY, _record(42), 3)
    changed = await ours.sync_from_storage()

    assert changed == [KEY]
    assert ours.get(KEY).record.balance == 42
    assert await ours.sync_from_storage() == []
    await storage.dispose()
