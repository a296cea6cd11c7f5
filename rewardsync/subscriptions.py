"""Live subscriptions: one store subscription per key, fanned out to listeners."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from rewardsync.connection import ConnectionManager
from rewardsync.errors import MalformedWrite, NotFound, SyncError, Unavailable
from rewardsync.metrics import ACTIVE_SUBSCRIPTIONS, RECONNECTS
from rewardsync.mirror import LocalMirrorCache
from rewardsync.models import Change
from rewardsync.sanitize import record_from_wire
from rewardsync.store import RecordStore, StoreSnapshot, Unsubscribe

Listener = Callable[[Change], Awaitable[None] | None]
Unwatch = Callable[[], Awaitable[None]]

log = logging.getLogger("rewardsync.subscriptions")


class KeyState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    DEGRADED = "degraded"


@dataclass(slots=True)
class _ListenerHandle:
    id: int
    callback: Listener
    last_version: int = 0


@dataclass(slots=True)
class _Watch:
    key: str
    state: KeyState = KeyState.UNSUBSCRIBED
    handles: Dict[int, _ListenerHandle] = field(default_factory=dict)
    unsubscribe: Optional[Unsubscribe] = None
    reconnect_task: Optional[asyncio.Task[None]] = None
    attempt: int = 0
    generation: int = 0


class SubscriptionManager:
    """Owns the live push subscription of every watched key.

    Store changes update the mirror first; listeners are then called with a
    :class:`Change` message, in non-decreasing version order. Losing the live
    channel is never fatal: the key goes ``DEGRADED``, keeps serving the
    mirror and reconnects with jittered exponential backoff for as long as it
    has listeners.
    """

    def __init__(
        self,
        store: RecordStore,
        mirror: LocalMirrorCache,
        connection: ConnectionManager,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.2,
        debounce: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._mirror = mirror
        self._connection = connection
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._debounce = debounce
        self._clock = clock
        self._rng = rng
        self._watches: Dict[str, _Watch] = {}
        self._ids = itertools.count(1)
        self._hidden_since: float | None = None
        self._remove_observer = mirror.add_observer(self._on_mirror_change)
        self._remove_connectivity = connection.add_listener(self._on_connectivity)

    def state(self, key: str) -> KeyState:
        watch = self._watches.get(key)
        return watch.state if watch is not None else KeyState.UNSUBSCRIBED

    def listener_count(self, key: str) -> int:
        watch = self._watches.get(key)
        return len(watch.handles) if watch is not None else 0

    async def watch(self, key: str, listener: Listener) -> Unwatch:
        """Register *listener* for *key*; the returned coroutine function removes it."""

        watch = self._watches.get(key)
        if watch is None:
            watch = _Watch(key=key)
            self._watches[key] = watch
        handle = _ListenerHandle(id=next(self._ids), callback=listener)
        watch.handles[handle.id] = handle

        entry = self._mirror.get(key)
        if entry is not None:
            self._deliver(handle, Change(key=key, entry=entry, origin="cache"))

        if watch.state is KeyState.UNSUBSCRIBED:
            try:
                await self._open(watch)
            except SyncError:
                await self._unwatch(key, handle.id)
                raise

        async def unwatch() -> None:
            await self._unwatch(key, handle.id)

        return unwatch

    async def _unwatch(self, key: str, handle_id: int) -> None:
        watch = self._watches.get(key)
        if watch is None:
            return
        watch.handles.pop(handle_id, None)
        if not watch.handles:
            await self._close(watch)

    async def _open(self, watch: _Watch) -> None:
        if not watch.handles:
            return
        key = watch.key
        watch.state = KeyState.SUBSCRIBING
        watch.generation += 1
        generation = watch.generation

        async def on_change(snapshot: StoreSnapshot) -> None:
            await self._on_store_change(key, generation, snapshot)

        async def on_error(exc: BaseException) -> None:
            self._on_store_error(key, generation, exc)

        try:
            unsubscribe = await self._store.subscribe(key, on_change, on_error)
        except Unavailable as exc:
            self._degrade(watch, exc)
            return
        except SyncError:
            watch.state = KeyState.UNSUBSCRIBED
            watch.generation += 1
            raise

        if self._watches.get(key) is not watch or watch.generation != generation:
            await self._release(unsubscribe)
            return

        watch.unsubscribe = unsubscribe
        watch.state = KeyState.ACTIVE
        watch.attempt = 0
        self._update_gauge()
        log.info("subscription active key=%s listeners=%s", key, len(watch.handles))
        await self._resync(watch)

    async def _resync(self, watch: _Watch) -> None:
        try:
            snapshot = await self._store.read(watch.key)
        except NotFound:
            return
        except SyncError as exc:
            self._degrade(watch, exc)
            return
        await self._apply_snapshot(watch.key, snapshot)

    async def _apply_snapshot(self, key: str, snapshot: StoreSnapshot) -> None:
        try:
            record = record_from_wire(snapshot.document)
        except (MalformedWrite, TypeError, ValueError):
            log.warning("ignoring unreadable document for %s at revision %s", key, snapshot.revision)
            return
        await self._mirror.apply_remote(key, record, snapshot.revision)
        self._connection.mark_synced()

    async def _on_store_change(self, key: str, generation: int, snapshot: StoreSnapshot) -> None:
        watch = self._watches.get(key)
        if watch is None or watch.generation != generation:
            return
        await self._apply_snapshot(key, snapshot)

    def _on_store_error(self, key: str, generation: int, exc: BaseException) -> None:
        watch = self._watches.get(key)
        if watch is None or watch.generation != generation:
            return
        self._degrade(watch, exc)

    def _degrade(self, watch: _Watch, exc: BaseException) -> None:
        if watch.state is KeyState.DEGRADED and watch.reconnect_task is not None:
            return
        log.warning("subscription degraded key=%s: %s", watch.key, exc)
        if watch.unsubscribe is not None:
            asyncio.ensure_future(self._release(watch.unsubscribe))
            watch.unsubscribe = None
        watch.state = KeyState.DEGRADED
        watch.generation += 1
        self._update_gauge()
        if watch.handles:
            self._schedule_reconnect(watch)

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self._max_delay, self._base_delay * (2 ** max(0, attempt)))
        if self._jitter:
            delay *= 1 + self._jitter * (2 * self._rng() - 1)
        return max(0.0, delay)

    def _schedule_reconnect(self, watch: _Watch) -> None:
        if watch.reconnect_task is not None:
            watch.reconnect_task.cancel()
        delay = self.backoff_delay(watch.attempt)
        watch.attempt += 1
        log.info("reconnect scheduled key=%s attempt=%s delay=%.2fs", watch.key, watch.attempt, delay)
        watch.reconnect_task = asyncio.create_task(
            self._reconnect_later(watch, delay),
            name=f"rewardsync-reconnect:{watch.key}",
        )

    async def _reconnect_later(self, watch: _Watch, delay: float) -> None:
        await asyncio.sleep(delay)
        watch.reconnect_task = None
        if self._watches.get(watch.key) is not watch or not watch.handles:
            return
        RECONNECTS.labels("backoff").inc()
        await self._reopen(watch)

    async def reconnect_now(self, key: str, *, trigger: str = "manual") -> None:
        """Skip the backoff timer: reopen a degraded key or resync an active one."""

        watch = self._watches.get(key)
        if watch is None or not watch.handles:
            return
        if watch.state is KeyState.ACTIVE:
            await self._resync(watch)
            return
        if watch.state is KeyState.SUBSCRIBING:
            return
        if watch.reconnect_task is not None:
            watch.reconnect_task.cancel()
            watch.reconnect_task = None
        RECONNECTS.labels(trigger).inc()
        await self._reopen(watch)

    async def _reopen(self, watch: _Watch) -> None:
        try:
            await self._open(watch)
        except SyncError as exc:
            self._degrade(watch, exc)

    async def reconnect_all(self, *, trigger: str = "manual") -> None:
        for key in list(self._watches):
            await self.reconnect_now(key, trigger=trigger)

    def _on_connectivity(self, online: bool) -> Awaitable[None] | None:
        if online:
            return self.reconnect_all(trigger="online")
        for watch in list(self._watches.values()):
            if watch.state in (KeyState.ACTIVE, KeyState.SUBSCRIBING):
                self._degrade(watch, Unavailable("connectivity lost", key=watch.key))
        return None

    def notify_hidden(self) -> None:
        """The host moved to the background (tab hidden, app suspended)."""

        if self._hidden_since is None:
            self._hidden_since = self._clock()

    async def notify_visible(self) -> bool:
        """The host is in the foreground again.

        Returns ``True`` when an immediate reconnect was triggered. Short
        blur/focus flickers under the debounce window are not treated as a
        background transition, and nothing happens while offline.
        """

        hidden_since, self._hidden_since = self._hidden_since, None
        if hidden_since is None:
            return False
        if self._clock() - hidden_since < self._debounce:
            return False
        if not self._connection.online:
            return False
        await self.reconnect_all(trigger="foreground")
        return True

    def _on_mirror_change(self, change: Change) -> None:
        watch = self._watches.get(change.key)
        if watch is None:
            return
        for handle in list(watch.handles.values()):
            self._deliver(handle, change)

    def _deliver(self, handle: _ListenerHandle, change: Change) -> None:
        if change.entry.version < handle.last_version:
            return
        handle.last_version = change.entry.version
        try:
            result = handle.callback(change)
        except Exception:
            log.exception("listener failed for %s", change.key)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_listener_failure)

    async def _close(self, watch: _Watch) -> None:
        if self._watches.get(watch.key) is watch:
            self._watches.pop(watch.key)
        if watch.reconnect_task is not None:
            watch.reconnect_task.cancel()
            watch.reconnect_task = None
        watch.generation += 1
        if watch.unsubscribe is not None:
            await self._release(watch.unsubscribe)
            watch.unsubscribe = None
        watch.state = KeyState.UNSUBSCRIBED
        self._update_gauge()
        log.info("subscription closed key=%s", watch.key)

    async def _release(self, unsubscribe: Unsubscribe) -> None:
        with contextlib.suppress(Exception):  # pragma: no cover - best effort cleanup
            await unsubscribe()

    async def close(self) -> None:
        for watch in list(self._watches.values()):
            await self._close(watch)
        self._remove_observer()
        self._remove_connectivity()

    def _update_gauge(self) -> None:
        ACTIVE_SUBSCRIPTIONS.set(
            sum(1 for watch in self._watches.values() if watch.state is KeyState.ACTIVE)
        )


def _log_listener_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("async listener failed", exc_info=exc)


__all__ = ["KeyState", "Listener", "SubscriptionManager", "Unwatch"]
