from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rewardsync.db.models import Base, MirrorRow
from rewardsync.errors import MalformedWrite
from rewardsync.models import LocalMirrorEntry, MirrorSource
from rewardsync.sanitize import record_from_wire, record_to_wire

log = logging.getLogger("db")


def _ensure_sqlite_dir(db_url: str) -> None:
    if not db_url.startswith("sqlite"):
        return
    _, _, raw_path = db_url.partition("///")
    if not raw_path or raw_path.startswith(":memory:"):
        return
    directory = Path(raw_path).parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
        log.info("DB: ensured sqlite dir %s", directory)
    except Exception:
        log.exception("DB: ensure sqlite dir failed")


def _row_values(key: str, entry: LocalMirrorEntry) -> dict:
    return {
        "key": key,
        "document": record_to_wire(entry.record),
        "captured_at": entry.captured_at,
        "source": entry.source.value,
        "version": entry.version,
        "revision": entry.revision,
    }


class MirrorStorage:
    """SQLAlchemy-backed persistence for mirror entries.

    Rows survive restarts and are shared by every process pointing at the same
    database. A save only lands when its version is higher than the stored one.
    """

    def __init__(self, db_url: str) -> None:
        self._db_url = db_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        if self._engine is not None:
            return
        _ensure_sqlite_dir(self._db_url)
        self._engine = create_async_engine(self._db_url, echo=False, pool_pre_ping=True)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("DB: mirror storage ready url=%s", self._db_url)

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("mirror storage is not initialized; call init() first")
        async with self._session_factory() as session:
            yield session

    async def load_all(self) -> dict[str, LocalMirrorEntry]:
        entries: dict[str, LocalMirrorEntry] = {}
        async with self.session_scope() as session:
            result = await session.execute(select(MirrorRow))
            for row in result.scalars():
                try:
                    record = record_from_wire(row.document)
                except (MalformedWrite, TypeError, ValueError):
                    log.warning("DB: skipping unreadable mirror row %s", row.key)
                    continue
                entries[row.key] = LocalMirrorEntry(
                    record=record,
                    captured_at=row.captured_at,
                    source=MirrorSource(row.source),
                    version=row.version,
                    revision=row.revision,
                )
        return entries

    async def load(self, key: str) -> LocalMirrorEntry | None:
        async with self.session_scope() as session:
            row = await session.get(MirrorRow, key)
            if row is None:
                return None
            return LocalMirrorEntry(
                record=record_from_wire(row.document),
                captured_at=row.captured_at,
                source=MirrorSource(row.source),
                version=row.version,
                revision=row.revision,
            )

    async def save(self, key: str, entry: LocalMirrorEntry) -> None:
        values = _row_values(key, entry)
        async with self.session_scope() as session:
            if self._engine is not None and self._engine.dialect.name == "sqlite":
                stmt = sqlite_insert(MirrorRow).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[MirrorRow.key],
                    set_={name: stmt.excluded[name] for name in values if name != "key"},
                    where=MirrorRow.version < stmt.excluded.version,
                )
                await session.execute(stmt)
            else:
                row = await session.get(MirrorRow, key, with_for_update=True)
                if row is None:
                    session.add(MirrorRow(**values))
                elif row.version < entry.version:
                    for name, value in values.items():
                        setattr(row, name, value)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self.session_scope() as session:
            await session.execute(delete(MirrorRow).where(MirrorRow.key == key))
            await session.commit()


__all__ = ["MirrorStorage"]
