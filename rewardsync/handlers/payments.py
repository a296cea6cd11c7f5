from __future__ import annotations

import asyncio
import logging

from aiogram import F, Router
from aiogram.types import Message, PreCheckoutQuery

from rewardsync.config import settings
from rewardsync.errors import Conflict, SyncError, Unavailable, WriteTimeout
from rewardsync.keys import validate_external_id
from rewardsync.payments import COINS_KIND, PaymentEvent, parse_invoice_payload
from rewardsync.service import RewardSyncService

router = Router(name="payments")
log = logging.getLogger("rewardsync.handlers.payments")

RETRY_ATTEMPTS = 5


def schedule_payment_retry(service: RewardSyncService, event: PaymentEvent, *, attempts: int = RETRY_ATTEMPTS) -> bool:
    """Re-drive a payment in the background; the event id keeps it single-credit."""

    async def _job() -> None:
        delay = settings.RECONNECT_BASE_DELAY
        for _ in range(attempts):
            await asyncio.sleep(delay)
            try:
                await service.credit_payment(event)
            except (Conflict, Unavailable, WriteTimeout) as exc:
                log.warning("payment %s retry failed: %s", event.event_id, exc)
                delay = min(delay * 2, settings.RECONNECT_MAX_DELAY)
                continue
            log.info("payment %s applied on retry", event.event_id)
            return
        log.error("payment %s not applied after %s retries", event.event_id, attempts)

    return service.background.submit(_job)


@router.pre_checkout_query()
async def on_pre_checkout(query: PreCheckoutQuery, service: RewardSyncService) -> None:
    try:
        parse_invoice_payload(query.invoice_payload)
        validate_external_id(query.from_user.id)
    except SyncError as exc:
        log.warning("pre-checkout rejected uid=%s: %s", query.from_user.id, exc)
        await query.answer(ok=False, error_message="This purchase is not available right now.")
        return
    if not service.get_connection_status().online:
        log.warning("pre-checkout rejected uid=%s: store offline", query.from_user.id)
        await query.answer(ok=False, error_message="Payments are temporarily unavailable, try again later.")
        return
    await query.answer(ok=True)


@router.message(F.successful_payment)
async def on_successful_payment(message: Message, service: RewardSyncService) -> None:
    payment = message.successful_payment
    try:
        event = PaymentEvent.from_telegram(
            user_id=message.from_user.id,
            invoice_payload=payment.invoice_payload,
            total_amount=payment.total_amount,
            currency=payment.currency,
            charge_id=payment.telegram_payment_charge_id,
        )
    except SyncError:
        log.exception("unreadable successful_payment uid=%s", message.from_user.id)
        await message.answer("Payment received, but we could not read it. Support will contact you.")
        return

    try:
        result = await service.credit_payment(event)
    except (Conflict, Unavailable, WriteTimeout) as exc:
        log.warning("payment %s deferred: %s", event.event_id, exc)
        schedule_payment_retry(service, event)
        await message.answer("Payment received. Your balance will update shortly.")
        return
    except SyncError:
        log.exception("payment %s could not be applied", event.event_id)
        await message.answer("Payment received, but it could not be applied. Support will contact you.")
        return

    if result is None:
        return
    if event.kind == COINS_KIND:
        text = f"+{event.coins} coins credited. Balance: {result.record.balance}"
    else:
        expiry = result.record.tier_expiry
        until = expiry.date().isoformat() if expiry else "-"
        text = f"{event.kind.upper()} activated until {until}"
    await message.answer(text)


__all__ = ["on_pre_checkout", "on_successful_payment", "router", "schedule_payment_retry"]
