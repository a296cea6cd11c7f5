"""Test configuration helpers."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rewardsync.connection import ConnectionManager  # noqa: E402
from rewardsync.coordinator import OptimisticUpdateCoordinator  # noqa: E402
from rewardsync.mirror import LocalMirrorCache  # noqa: E402
from rewardsync.rewards import IdempotentRewardApplier  # noqa: E402
from rewardsync.sanitize import new_record_document  # noqa: E402
from rewardsync.service import RewardSyncService  # noqa: E402
from rewardsync.store import MemoryRecordStore  # noqa: E402

USER_ID = "123456789"
USER_KEY = f"telegram_users/{USER_ID}"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addini(
        "asyncio_default_fixture_loop_scope",
        "Default asyncio fixture loop scope",
        default="function",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Register the asyncio marker for the lightweight runner below."""

    config.addinivalue_line("markers", "asyncio: execute the test inside an event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``@pytest.mark.asyncio`` tests without requiring pytest-asyncio."""

    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None

    func = pyfuncitem.obj
    if not asyncio.iscoroutinefunction(func):
        return None

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop.run_until_complete(func(**kwargs))
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


async def settle(rounds: int = 5) -> None:
    """Let fire-and-forget callbacks (store pushes, async listeners) run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def seed_user(store: MemoryRecordStore, external_id: str = USER_ID, **fields) -> str:
    key = f"telegram_users/{external_id}"
    await store.write(key, new_record_document(external_id, **fields))
    return key


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore(ConnectionManager())


@pytest.fixture
def mirror() -> LocalMirrorCache:
    return LocalMirrorCache()


@pytest.fixture
def coordinator(store: MemoryRecordStore, mirror: LocalMirrorCache) -> OptimisticUpdateCoordinator:
    return OptimisticUpdateCoordinator(store, mirror, write_timeout=1.0)


@pytest.fixture
def applier(coordinator: OptimisticUpdateCoordinator) -> IdempotentRewardApplier:
    return IdempotentRewardApplier(coordinator)


@pytest.fixture
def service(store: MemoryRecordStore) -> RewardSyncService:
    return RewardSyncService(store, write_timeout=1.0, base_delay=0.01, max_delay=0.05, jitter=0.0)


@pytest.fixture
def drain():
    return settle


@pytest.fixture
def seed(store: MemoryRecordStore):
    async def _seed(external_id: str = USER_ID, **fields) -> str:
        return await seed_user(store, external_id, **fields)

    return _seed
