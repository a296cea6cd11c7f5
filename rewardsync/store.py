"""Record store capability interface and the in-process backend."""

from __future__ import annotations

import abc
import asyncio
import copy
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from rewardsync.connection import ConnectionManager
from rewardsync.errors import Conflict, Denied, NotFound, Unavailable
from rewardsync.models import ConnectionStatus

log = logging.getLogger("rewardsync.store")


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    """A stored document together with the store-assigned revision."""

    key: str
    document: Dict[str, Any]
    revision: int


ChangeCallback = Callable[[StoreSnapshot], Awaitable[None] | None]
ErrorCallback = Callable[[BaseException], Awaitable[None] | None]
Unsubscribe = Callable[[], Awaitable[None]]


class RecordStore(abc.ABC):
    """Thin capability wrapper around the external document store.

    ``patch`` is atomic from the caller's point of view: concurrent patches to
    disjoint fields never clobber each other. ``None`` values in a patch delete
    the field.
    """

    def __init__(self, connection: ConnectionManager) -> None:
        self.connection = connection

    @abc.abstractmethod
    async def read(self, key: str) -> StoreSnapshot:
        ...

    @abc.abstractmethod
    async def write(self, key: str, document: Dict[str, Any]) -> StoreSnapshot:
        """Create *key* with *document* unless it exists; return what is stored."""

    @abc.abstractmethod
    async def patch(
        self,
        key: str,
        partial: Dict[str, Any],
        *,
        expected_revision: Optional[int] = None,
    ) -> StoreSnapshot:
        """Merge *partial* into *key*.

        With *expected_revision* the patch only lands while the stored revision
        still equals it; otherwise :class:`Conflict` is raised and nothing changes.
        """

    @abc.abstractmethod
    async def subscribe(
        self,
        key: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        ...

    def connectivity(self) -> ConnectionStatus:
        return self.connection.status()


async def invoke_callback(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class MemoryRecordStore(RecordStore):
    """Process-local store used for development and tests.

    Patches run as read-modify-write under a per-key lock. ``set_online(False)``
    makes every call fail with :class:`Unavailable` and errors out live
    subscriptions, which is how network loss looks from the outside.
    """

    def __init__(self, connection: ConnectionManager | None = None) -> None:
        super().__init__(connection or ConnectionManager())
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._revisions: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subscribers: Dict[str, list[tuple[ChangeCallback, Optional[ErrorCallback]]]] = defaultdict(list)
        self._denied: set[str] = set()

    def set_online(self, online: bool) -> None:
        if online:
            self.connection.mark_online()
            return
        self.connection.mark_offline("memory store switched offline")
        error = Unavailable("memory store offline")
        subscribers = {key: list(items) for key, items in self._subscribers.items()}
        self._subscribers.clear()
        for items in subscribers.values():
            for _, on_error in items:
                if on_error is not None:
                    asyncio.ensure_future(invoke_callback(on_error, error))

    def deny(self, key: str, denied: bool = True) -> None:
        if denied:
            self._denied.add(key)
        else:
            self._denied.discard(key)

    def subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, ()))

    def _check(self, key: str, *, writing: bool = False) -> None:
        if not self.connection.online:
            raise Unavailable("memory store offline", key=key)
        if writing and key in self._denied:
            raise Denied("write rejected by store rules", key=key)

    def _snapshot(self, key: str) -> StoreSnapshot:
        return StoreSnapshot(key, copy.deepcopy(self._documents[key]), self._revisions[key])

    async def read(self, key: str) -> StoreSnapshot:
        self._check(key)
        await asyncio.sleep(0)
        if key not in self._documents:
            raise NotFound("record does not exist", key=key)
        self.connection.mark_synced()
        return self._snapshot(key)

    async def write(self, key: str, document: Dict[str, Any]) -> StoreSnapshot:
        self._check(key, writing=True)
        async with self._locks[key]:
            await asyncio.sleep(0)
            if key not in self._documents:
                self._documents[key] = copy.deepcopy(document)
                self._revisions[key] = 1
                snapshot = self._snapshot(key)
                self._publish(snapshot)
            else:
                snapshot = self._snapshot(key)
        self.connection.mark_synced()
        return snapshot

    async def patch(
        self,
        key: str,
        partial: Dict[str, Any],
        *,
        expected_revision: Optional[int] = None,
    ) -> StoreSnapshot:
        self._check(key, writing=True)
        async with self._locks[key]:
            await asyncio.sleep(0)
            self._check(key, writing=True)
            if key not in self._documents:
                raise NotFound("cannot patch a missing record", key=key)
            if expected_revision is not None and self._revisions[key] != expected_revision:
                raise Conflict(
                    f"revision is {self._revisions[key]}, expected {expected_revision}", key=key
                )
            document = copy.deepcopy(self._documents[key])
            for name, value in partial.items():
                if value is None:
                    document.pop(name, None)
                else:
                    document[name] = copy.deepcopy(value)
            self._documents[key] = document
            self._revisions[key] += 1
            snapshot = self._snapshot(key)
        self._publish(snapshot)
        self.connection.mark_synced()
        return snapshot

    async def subscribe(
        self,
        key: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        self._check(key)
        entry = (on_change, on_error)
        self._subscribers[key].append(entry)

        async def _unsubscribe() -> None:
            items = self._subscribers.get(key)
            if items and entry in items:
                items.remove(entry)
            if not items:
                self._subscribers.pop(key, None)

        return _unsubscribe

    def _publish(self, snapshot: StoreSnapshot) -> None:
        for on_change, _ in list(self._subscribers.get(snapshot.key, ())):
            asyncio.ensure_future(
                invoke_callback(
                    on_change,
                    StoreSnapshot(snapshot.key, copy.deepcopy(snapshot.document), snapshot.revision),
                )
            )


__all__ = [
    "ChangeCallback",
    "ErrorCallback",
    "MemoryRecordStore",
    "RecordStore",
    "StoreSnapshot",
    "Unsubscribe",
    "invoke_callback",
]
