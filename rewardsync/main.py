from __future__ import annotations

import asyncio
import logging
import time

from aiogram import Bot, Dispatcher, __version__ as aiogram_version
from aiogram.client.default import DefaultBotProperties
from aiohttp import web

from rewardsync.config import settings
from rewardsync.handlers import payments as h_payments
from rewardsync.handlers import start as h_start
from rewardsync.logging_config import setup_logging
from rewardsync.service import RewardSyncService
from rewardsync.web import start_web_app, stop_web_app

startup_log = logging.getLogger("startup")


def _dry_run_reason() -> str | None:
    token = (settings.BOT_TOKEN or "").strip()
    if not token:
        return "missing BOT_TOKEN"
    lowered = token.lower()
    if lowered.startswith("dummy") or lowered.startswith("placeholder"):
        return "placeholder BOT_TOKEN"
    return None


def build_dispatcher(service: RewardSyncService) -> Dispatcher:
    dp = Dispatcher(service=service)
    dp.include_router(h_start.router)
    dp.include_router(h_payments.router)
    return dp


async def _wait_forever() -> None:
    event = asyncio.Event()
    await event.wait()


async def main() -> None:
    setup_logging(log_dir=settings.LOG_DIR, level=settings.LOG_LEVEL)
    t0 = time.perf_counter()

    def mark(tag: str) -> None:
        startup_log.info("%s (%.1f ms)", tag, (time.perf_counter() - t0) * 1000)

    mark("S1: setup_logging done")
    startup_log.info(
        "env=%s backend=%s aiogram=%s",
        settings.ENVIRONMENT,
        settings.STORE_BACKEND,
        aiogram_version,
    )

    service = RewardSyncService.from_settings(settings)
    await service.init()
    mark("S2: sync service started")

    runner: web.AppRunner | None = None
    site: web.BaseSite | None = None
    try:
        runner, site = await start_web_app(service)
        mark("S3: web app started")

        reason = _dry_run_reason()
        if reason is not None:
            startup_log.warning("telegram polling skipped (%s)", reason)
            await _wait_forever()
            return

        bot = Bot(token=settings.BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
        dp = build_dispatcher(service)
        allowed_updates = dp.resolve_used_update_types()
        mark(f"S4: start_polling allowed_updates={sorted(allowed_updates)}")
        await dp.start_polling(bot, allowed_updates=allowed_updates)
        mark("S5: start_polling exited normally")
    finally:
        mark("S9: shutdown sequence")
        await stop_web_app(runner, site)
        await service.teardown()


if __name__ == "__main__":
    asyncio.run(main())
