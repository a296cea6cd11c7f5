"""In-process worker pool for deferred sync work (mirror refreshes, payment retries)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Optional

from rewardsync.errors import SyncError

Job = Callable[[], Awaitable[None]]
Refresher = Callable[[str], Awaitable[object]]

log = logging.getLogger("rewardsync.background")


class BackgroundQueue:
    """FIFO queue drained by a fixed number of asyncio workers.

    Jobs submitted before :meth:`start` are refused. :meth:`stop` lets the
    workers finish what is already queued, then shuts them down.
    """

    def __init__(self, *, workers: int = 1) -> None:
        self._size = max(1, workers)
        self._queue: asyncio.Queue[Optional[Job]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._failed = 0

    @property
    def started(self) -> bool:
        return bool(self._workers)

    @property
    def failed(self) -> int:
        return self._failed

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run(), name=f"mirror-refresh-{number}")
            for number in range(1, self._size + 1)
        ]
        log.info("background queue started workers=%s", self._size)

    async def stop(self) -> None:
        if not self._workers:
            return
        for _ in self._workers:
            self._queue.put_nowait(None)
        workers, self._workers = self._workers, []
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._queue = asyncio.Queue()
        log.info("background queue stopped failed_jobs=%s", self._failed)

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await job()
            except Exception:  # pragma: no cover
                self._failed += 1
                log.exception("background job failed")
            finally:
                self._queue.task_done()

    def submit(self, job: Job) -> bool:
        if not self._workers:
            log.warning("background queue not running; job dropped")
            return False
        self._queue.put_nowait(job)
        return True

    def schedule_refresh(self, keys: Iterable[str], refresh: Refresher) -> int:
        """Queue one refresh per distinct key; return how many were queued."""

        queued = 0
        for key in dict.fromkeys(key for key in keys if key):

            async def _job(key: str = key) -> None:
                try:
                    await refresh(key)
                except SyncError as exc:
                    log.warning("mirror refresh of %s failed: %s", key, exc)

            if self.submit(_job):
                queued += 1
        if queued:
            log.info("queued %s mirror refreshes", queued)
        return queued


__all__ = ["BackgroundQueue", "Job", "Refresher"]
