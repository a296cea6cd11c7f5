"""Local mirror of user records with source tagging and version ordering."""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from rewardsync.db.session import MirrorStorage
from rewardsync.models import Change, LocalMirrorEntry, MirrorSource, UserRecord

MirrorObserver = Callable[[Change], None]

log = logging.getLogger("rewardsync.mirror")


class LocalMirrorCache:
    """Per-key snapshots kept in memory and, optionally, in durable storage.

    Every accepted mutation bumps the entry version. Entries coming from other
    processes win only with a strictly higher version; remote store changes
    win only with a strictly higher store revision.
    """

    def __init__(
        self,
        storage: Optional[MirrorStorage] = None,
        *,
        stale_after: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._stale_after = max(0.0, float(stale_after))
        self._clock = clock
        self._entries: Dict[str, LocalMirrorEntry] = {}
        self._deferred: Dict[str, tuple[UserRecord, int]] = {}
        self._observers: list[MirrorObserver] = []

    @property
    def storage(self) -> Optional[MirrorStorage]:
        return self._storage

    def add_observer(self, observer: MirrorObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._observers.remove(observer)

        return _remove

    def get(self, key: str) -> Optional[LocalMirrorEntry]:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def is_stale(self, entry: LocalMirrorEntry) -> bool:
        return self._clock() - entry.captured_at > self._stale_after

    async def set(self, key: str, entry: LocalMirrorEntry, *, origin: str = "local") -> bool:
        """Store *entry* unless an entry with the same or a higher version exists."""

        current = self._entries.get(key)
        if current is not None and entry.version <= current.version:
            log.debug(
                "mirror %s: dropped version %s (current %s, origin=%s)",
                key,
                entry.version,
                current.version,
                origin,
            )
            return False
        self._entries[key] = entry
        await self._persist(key, entry)
        self._publish(Change(key=key, entry=entry, origin=origin))
        return True

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        self._deferred.pop(key, None)
        if self._storage is not None:
            try:
                await self._storage.delete(key)
            except SQLAlchemyError:
                log.exception("mirror %s: durable delete failed", key)

    def _next(
        self,
        key: str,
        record: UserRecord,
        source: MirrorSource,
        revision: int | None = None,
    ) -> LocalMirrorEntry:
        current = self._entries.get(key)
        version = current.version + 1 if current is not None else 1
        if revision is None:
            revision = current.revision if current is not None else 0
        return LocalMirrorEntry(
            record=record,
            captured_at=self._clock(),
            source=source,
            version=version,
            revision=revision,
        )

    async def put_optimistic(self, key: str, record: UserRecord) -> LocalMirrorEntry:
        entry = self._next(key, record, MirrorSource.OPTIMISTIC)
        await self.set(key, entry, origin="optimistic")
        return entry

    async def commit(self, key: str, record: UserRecord, revision: int) -> LocalMirrorEntry:
        current = self._entries.get(key)
        if current is not None:
            revision = max(revision, current.revision)
        entry = self._next(key, record, MirrorSource.AUTHORITATIVE, revision)
        await self.set(key, entry, origin="commit")
        await self._flush_deferred(key)
        return self._entries[key]

    async def rollback(self, key: str, snapshot: UserRecord) -> LocalMirrorEntry:
        entry = self._next(key, snapshot, MirrorSource.AUTHORITATIVE)
        await self.set(key, entry, origin="rollback")
        await self._flush_deferred(key)
        return self._entries[key]

    async def apply_remote(
        self, key: str, record: UserRecord, revision: int
    ) -> Optional[LocalMirrorEntry]:
        """Apply a pushed or freshly read store document.

        Returns the new entry, or ``None`` when the change was dropped as late
        or deferred behind a pending optimistic write.
        """

        current = self._entries.get(key)
        if (
            current is not None
            and current.source is MirrorSource.CACHED
            and revision == current.revision
        ):
            # unchanged since it was cached: confirm it
            entry = self._next(key, record, MirrorSource.AUTHORITATIVE, revision)
            await self.set(key, entry, origin="refresh")
            return entry
        if current is not None and revision <= current.revision:
            log.debug("mirror %s: dropped late revision %s (have %s)", key, revision, current.revision)
            return None
        if current is not None and current.source is MirrorSource.OPTIMISTIC:
            deferred = self._deferred.get(key)
            if deferred is None or deferred[1] < revision:
                self._deferred[key] = (record, revision)
            return None
        entry = self._next(key, record, MirrorSource.AUTHORITATIVE, revision)
        await self.set(key, entry, origin="remote")
        return entry

    async def _flush_deferred(self, key: str) -> None:
        deferred = self._deferred.pop(key, None)
        if deferred is None:
            return
        record, revision = deferred
        await self.apply_remote(key, record, revision)

    async def merge_external(self, key: str, entry: LocalMirrorEntry) -> bool:
        """Accept an entry written by another process (last writer wins by version)."""

        current = self._entries.get(key)
        if current is not None and entry.version <= current.version:
            return False
        if current is not None and entry.revision < current.revision:
            return False
        if current is not None and current.source is MirrorSource.OPTIMISTIC:
            # our own write is in flight; it settles through commit/rollback
            return False
        if entry.source is MirrorSource.OPTIMISTIC:
            entry = replace(entry, source=MirrorSource.CACHED)
        self._entries[key] = entry
        self._publish(Change(key=key, entry=entry, origin="external"))
        return True

    async def load(self) -> list[str]:
        """Load durable entries; return the keys that need a background refresh."""

        if self._storage is None:
            return []
        stale: list[str] = []
        stored = await self._storage.load_all()
        for key, entry in stored.items():
            if entry.source is MirrorSource.OPTIMISTIC or self.is_stale(entry):
                entry = replace(entry, source=MirrorSource.CACHED)
            if entry.source is MirrorSource.CACHED:
                stale.append(key)
            current = self._entries.get(key)
            if current is None or entry.version > current.version:
                self._entries[key] = entry
        log.info("mirror loaded entries=%s stale=%s", len(stored), len(stale))
        return stale

    async def sync_from_storage(self) -> list[str]:
        """Pull entries other processes persisted; return the keys that changed."""

        if self._storage is None:
            return []
        changed: list[str] = []
        for key, entry in (await self._storage.load_all()).items():
            if await self.merge_external(key, entry):
                changed.append(key)
        return changed

    async def _persist(self, key: str, entry: LocalMirrorEntry) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save(key, entry)
        except SQLAlchemyError:
            log.exception("mirror %s: durable save failed", key)

    def _publish(self, change: Change) -> None:
        for observer in list(self._observers):
            observer(change)


__all__ = ["LocalMirrorCache", "MirrorObserver"]
