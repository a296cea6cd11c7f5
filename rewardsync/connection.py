"""Connection lifecycle and the online/offline signal for the record store."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rewardsync.models import ConnectionStatus

ConnectivityListener = Callable[[bool], Awaitable[None] | None]

log = logging.getLogger("rewardsync.connection")


class ConnectionManager:
    """Owns the store client and tracks whether the store is reachable.

    One instance is created per hosting process and passed to the store
    adapter and the subscription manager. ``init`` and ``teardown`` bracket
    its lifetime.
    """

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        client: Optional[redis.Redis] = None,
        check_interval: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis_url = redis_url
        self._check_interval = max(0.1, float(check_interval))
        self._clock = clock
        self._client: Optional[redis.Redis] = client
        self._online = True
        self._last_change: float | None = None
        self._last_sync: float | None = None
        self._listeners: list[ConnectivityListener] = []
        self._check_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def online(self) -> bool:
        return self._online

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("connection manager has no redis client; call init() first")
        return self._client

    async def init(self) -> None:
        if self._started:
            return
        self._started = True
        if self._client is None and self._redis_url:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        if self._client is not None:
            await self.check()
            self._check_task = asyncio.create_task(self._check_loop(), name="rewardsync-connectivity")
        log.info("connection manager started backend=%s", "redis" if self._client is not None else "memory")

    async def teardown(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._check_task is not None:
            self._check_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._check_task
            self._check_task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._listeners.clear()
        log.info("connection manager stopped")

    async def check(self) -> bool:
        """Ping the store once and update the online flag."""

        if self._client is None:
            return self._online
        try:
            await self._client.ping()
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            self.mark_offline(f"ping failed: {exc}")
            return False
        self.mark_online()
        return True

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            await self.check()

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def mark_online(self) -> None:
        if self._online:
            return
        self._online = True
        self._last_change = self._clock()
        log.info("record store is reachable again")
        self._emit(True)

    def mark_offline(self, reason: str = "") -> None:
        if not self._online:
            return
        self._online = False
        self._last_change = self._clock()
        log.warning("record store unreachable: %s", reason or "unknown reason")
        self._emit(False)

    def mark_synced(self) -> None:
        self._last_sync = self._clock()

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            online=self._online,
            last_change=self._last_change,
            last_sync_time=self._last_sync,
        )

    def _emit(self, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                result: Any = listener(online)
            except Exception:  # pragma: no cover - listener bugs must not break the signal
                log.exception("connectivity listener failed")
                continue
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)


__all__ = ["ConnectionManager", "ConnectivityListener"]
