"""aiogram routers that feed Telegram updates into the reward sync service."""

from . import payments, start

__all__ = ["payments", "start"]
