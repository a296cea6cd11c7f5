"""Optimistic updates with per-key serialization and exact rollback."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import AsyncIterator, Callable, Dict

from rewardsync.errors import (
    Conflict,
    InvariantViolation,
    NotFound,
    WriteTimeout,
)
from rewardsync.keys import external_id_from_key
from rewardsync.metrics import ROLLBACKS, WRITE_LATENCY, WRITES
from rewardsync.mirror import LocalMirrorCache
from rewardsync.models import MirrorSource, UserRecord, normalize, validate_record
from rewardsync.sanitize import build_patch, new_record_document, record_from_wire
from rewardsync.store import RecordStore, StoreSnapshot

Mutator = Callable[[UserRecord], UserRecord]

log = logging.getLogger("rewardsync.coordinator")


class OptimisticUpdateCoordinator:
    """Serializes mutations per key and keeps the mirror honest about them.

    An update is shown in the mirror as soon as it validates, then confirmed
    by an authoritative patch. If the patch fails or times out, the mirror
    returns to the exact record it held before the update.

    The patch only lands on the store revision the mutator saw. When another
    process got there first the record is re-read and the mutator runs again.
    """

    def __init__(
        self,
        store: RecordStore,
        mirror: LocalMirrorCache,
        *,
        write_timeout: float = 12.0,
        conflict_attempts: int = 5,
    ) -> None:
        self._store = store
        self._mirror = mirror
        self._write_timeout = write_timeout
        self._conflict_attempts = max(1, conflict_attempts)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @property
    def mirror(self) -> LocalMirrorCache:
        return self._mirror

    def pending(self, key: str) -> int:
        """Number of updates holding or waiting for the lock of *key*."""

        return self._waiters.get(key, 0)

    @contextlib.asynccontextmanager
    async def _serialized(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                self._locks.pop(key, None)

    async def _bounded(self, key: str, operation) -> StoreSnapshot:
        try:
            return await asyncio.wait_for(operation, timeout=self._write_timeout)
        except asyncio.TimeoutError as exc:
            raise WriteTimeout(
                f"store did not confirm the write within {self._write_timeout:g}s", key=key
            ) from exc

    async def _create(self, key: str, **profile) -> UserRecord:
        document = new_record_document(external_id_from_key(key), **profile)
        snapshot = await self._bounded(key, self._store.write(key, document))
        await self._mirror.apply_remote(key, record_from_wire(snapshot.document), snapshot.revision)
        return self._mirror.get(key).record

    async def _load(self, key: str, *, create_missing: bool) -> UserRecord:
        entry = self._mirror.get(key)
        if entry is not None and entry.source is not MirrorSource.CACHED:
            return entry.record
        try:
            snapshot = await self._store.read(key)
        except NotFound:
            if not create_missing:
                raise
            return await self._create(key)
        await self._mirror.apply_remote(key, record_from_wire(snapshot.document), snapshot.revision)
        return self._mirror.get(key).record

    async def current(self, key: str) -> UserRecord:
        """The record as the next update would see it."""

        async with self._serialized(key):
            return await self._load(key, create_missing=False)

    async def update(
        self,
        key: str,
        mutator: Mutator,
        *,
        create_missing: bool = False,
    ) -> UserRecord:
        async with self._serialized(key):
            attempt = 1
            while True:
                try:
                    return await self._attempt(key, mutator, create_missing=create_missing)
                except Conflict as exc:
                    if attempt >= self._conflict_attempts:
                        raise
                    log.info("update of %s raced another writer (%s); re-reading", key, exc)
                    attempt += 1
                    await self._reload(key)

    async def _reload(self, key: str) -> None:
        snapshot = await self._store.read(key)
        await self._mirror.apply_remote(key, record_from_wire(snapshot.document), snapshot.revision)

    async def _attempt(self, key: str, mutator: Mutator, *, create_missing: bool) -> UserRecord:
        current = await self._load(key, create_missing=create_missing)
        expected = self._mirror.get(key).revision

        optimistic = normalize(mutator(current))
        if optimistic.external_id != current.external_id:
            raise InvariantViolation("external_id is immutable", key=key)
        validate_record(optimistic)

        patch = build_patch(current, optimistic)
        if not patch:
            return current

        await self._mirror.put_optimistic(key, optimistic)
        started = time.perf_counter()
        try:
            snapshot = await self._bounded(
                key, self._store.patch(key, patch, expected_revision=expected)
            )
            record = record_from_wire(snapshot.document)
        except (Exception, asyncio.CancelledError) as exc:
            reason = type(exc).__name__
            await self._mirror.rollback(key, current)
            ROLLBACKS.labels(reason).inc()
            WRITES.labels("conflict" if isinstance(exc, Conflict) else "failed").inc()
            log.warning("update of %s rolled back (%s): %s", key, reason, exc)
            raise
        finally:
            WRITE_LATENCY.observe(time.perf_counter() - started)

        await self._mirror.commit(key, record, snapshot.revision)
        WRITES.labels("ok").inc()
        log.debug("update of %s committed at revision %s", key, snapshot.revision)
        return record

    async def ensure(self, key: str, **profile) -> UserRecord:
        """Create the record on first contact; return the existing one otherwise."""

        async with self._serialized(key):
            entry = self._mirror.get(key)
            if entry is not None and entry.source is MirrorSource.AUTHORITATIVE:
                return entry.record
            return await self._create(key, **profile)

    async def refresh(self, key: str) -> UserRecord | None:
        """Re-read *key* from the store; forget it when the store no longer has it."""

        async with self._serialized(key):
            try:
                snapshot = await self._store.read(key)
            except NotFound:
                await self._mirror.invalidate(key)
                return None
            await self._mirror.apply_remote(key, record_from_wire(snapshot.document), snapshot.revision)
            entry = self._mirror.get(key)
            return entry.record if entry is not None else None


__all__ = ["Mutator", "OptimisticUpdateCoordinator"]
