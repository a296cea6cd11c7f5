"""Durable storage for the local mirror."""

from .models import Base, MirrorRow
from .session import MirrorStorage

__all__ = ["Base", "MirrorRow", "MirrorStorage"]
