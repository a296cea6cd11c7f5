from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


_bigint = BigInteger().with_variant(Integer(), "sqlite")


class MirrorRow(Base):
    """Durable copy of one local mirror entry."""

    __tablename__ = "mirror_entries"
    __table_args__ = (Index("ix_mirror_entries_captured_at", "captured_at"),)

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    captured_at: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(_bigint, nullable=False, default=0)
    revision: Mapped[int] = mapped_column(_bigint, nullable=False, default=0)
