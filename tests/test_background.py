import pytest

from rewardsync.background import BackgroundQueue
from rewardsync.errors import Unavailable


@pytest.mark.asyncio
async def test_refreshes_run_once_per_key_and_survive_failures() -> None:
    queue = BackgroundQueue(workers=2)
    refreshed = []

    async def refresh(key: str) -> None:
        refreshed.append(key)
        if key.endswith("2"):
            raise Unavailable("offline", key=key)

    assert queue.submit(lambda: refresh("x")) is False

    await queue.start()
    queued = queue.schedule_refresh(["telegram_users/111111", "", "telegram_users/222222", "telegram_users/111111"], refresh)
    await queue.join()
    await queue.stop()

    assert queued == 2
    assert sorted(refreshed) == ["telegram_users/111111", "telegram_users/222222"]
    assert queue.failed == 0
    assert queue.started is False


@pytest.mark.asyncio
async def test_stop_drains_queued_jobs() -> None:
    queue = BackgroundQueue()
    done = []

    async def job() -> None:
        done.append(1)

    await queue.start()
    for _ in range(3):
        queue.submit(job)
    await queue.stop()

    assert done == [1, 1, 1]
