from __future__ import annotations

import html
import logging

from aiogram import Router
from aiogram.filters import CommandObject, CommandStart
from aiogram.types import Message

from rewardsync.errors import InvalidKey, NotEligible, SyncError, Unavailable, WriteTimeout
from rewardsync.service import RewardSyncService

router = Router(name="start")
log = logging.getLogger("rewardsync.handlers.start")

REFERRAL_PREFIX = "ref_"


def referrer_from_payload(payload: str | None) -> str | None:
    """``/start ref_123456`` deep links carry the referrer id."""

    if not payload:
        return None
    text = payload.strip()
    if text.startswith(REFERRAL_PREFIX):
        text = text[len(REFERRAL_PREFIX):]
    return text or None


@router.message(CommandStart())
async def on_start(message: Message, command: CommandObject, service: RewardSyncService) -> None:
    user = message.from_user
    try:
        record = await service.ensure_user(user.id, username=user.username, first_name=user.first_name)
    except InvalidKey:
        log.warning("start ignored for unusable uid=%s", user.id)
        return
    except (Unavailable, WriteTimeout):
        await message.answer("We are reconnecting, please try again in a moment.")
        return

    referrer = referrer_from_payload(command.args)
    if referrer is not None:
        try:
            await service.register_referral(user.id, referrer)
        except (InvalidKey, NotEligible) as exc:
            log.info("referral ignored uid=%s payload=%s: %s", user.id, command.args, exc)
        except SyncError:
            log.exception("referral registration failed uid=%s", user.id)

    name = html.escape(record.first_name or record.username or "friend")
    await message.answer(f"Welcome, {name}! Balance: {record.balance} coins")


__all__ = ["on_start", "referrer_from_payload", "router"]
